"""
chunkxfer - Chunked, resumable file transfer over datagram sockets.

Clients push files to a single server one chunk at a time. Each transfer
is negotiated with a manifest, flow-controlled by a sliding window,
resumable by transfer identifier, and verified end to end.
"""

__version__ = "0.3.0"
