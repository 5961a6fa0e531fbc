"""Wire-level helpers: SLIP, length-prefixed framing and shared structures."""

from . import framing, slip, structures
from .framing import extract_frame, find_header, wrap_length_prefixed
from .slip import scan_frame, slip_encode

__all__ = [
    "extract_frame",
    "find_header",
    "framing",
    "scan_frame",
    "slip",
    "slip_encode",
    "structures",
    "wrap_length_prefixed",
]
