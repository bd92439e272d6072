import sys

from coordination.cli import main

sys.exit(main())
