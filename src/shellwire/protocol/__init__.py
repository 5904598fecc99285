"""Protocol layer: wire markers, chunk codec, frame encoder, and demultiplexer."""

from .codec import DecodeError, decode_chunk, encode_chunk
from .demux import StreamDemultiplexer
from .framing import FrameWriter
