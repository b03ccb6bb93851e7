"""
File Module - Chunking, Manifests, and Reassembly

Data-path helpers: the sender reads chunks with FileChunker, the receiver
writes them into a staging artifact with Reassembler.
"""

from .chunker import FileChunker, Chunk, CHUNK_SIZE, compute_checksum
from .manifest import TransferManifest, create_manifest, make_transfer_id
from .reassembler import Reassembler, staging_path_for

__all__ = [
    'FileChunker',
    'Chunk',
    'CHUNK_SIZE',
    'compute_checksum',
    'TransferManifest',
    'create_manifest',
    'make_transfer_id',
    'Reassembler',
    'staging_path_for',
]
