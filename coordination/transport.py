"""
Point-to-point message delivery.

Both transports expose ``send(address, message)``, which returns once the
receiving endpoint has acknowledged the message and raises TransportError
otherwise. Nothing here retries; ordering and delivery are best effort.

- HttpTransport POSTs the JSON body to ``<peer url>/<kind>`` with requests.
- LocalTransport hands the encoded payload straight to an in-process node,
  skipping the network but still going through the wire encoding.
"""

import threading

import requests

from coordination.config import NodeAddress
from coordination.messages import ENDPOINTS, Message, encode


class TransportError(Exception):
    """A message could not be delivered to its destination."""


class HttpTransport:
    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout

    def send(self, address: NodeAddress, message: Message):
        url = f"{address.url}{ENDPOINTS[message.kind]}"
        try:
            resp = requests.post(url, json=encode(message), timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"{url}: {e}") from e
        if resp.status_code != 200:
            raise TransportError(f"{url}: HTTP {resp.status_code}")


class LocalTransport:
    """Delivers to nodes registered in the same process."""

    def __init__(self):
        self.lock = threading.Lock()
        self.nodes = {}  # node_id -> NodeRuntime
        # node ids whose inbound traffic is dropped, to simulate unreachable peers
        self.unreachable = set()

    def register(self, node):
        with self.lock:
            self.nodes[node.node_id] = node

    def send(self, address: NodeAddress, message: Message):
        with self.lock:
            node = self.nodes.get(address.node_id)
            dropped = address.node_id in self.unreachable
        if node is None or dropped:
            raise TransportError(f"node {address.node_id} is unreachable")
        node.deliver(message.kind, encode(message))
