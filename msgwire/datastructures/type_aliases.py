"""
Semantic type aliases for msgwire.

These aliases keep signatures self-documenting where a raw ``str`` or ``int``
would not say what the value means on the wire.
"""

# Network addressing
type HostName = str
type PortNumber = int
type SocketAddress = tuple[str, int]
type TransportURL = str

# Sizes and counters
type ByteCount = int
type BacklogSize = int

# Event registry
type SubscriptionHandle = int
