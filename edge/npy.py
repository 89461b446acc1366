# =============================================================================
# Fundus Edge Demo - NPY Tensor Codec
# =============================================================================
# Decodes precomputed embeddings stored in the NPY v1.0 array format:
#
#   offset 0   6 bytes   magic "\x93NUMPY"
#   offset 6   2 bytes   version (major, minor), only 1.0 is accepted
#   offset 8   2 bytes   header length, little-endian uint16
#   offset 10  N bytes   ASCII dict literal: {'descr', 'fortran_order', 'shape'}
#                        space-padded so the payload starts on an aligned offset
#   offset 10+N          little-endian float32 payload, row-major
#
# Validation runs in a fixed order and every failure has its own error type,
# so a malformed resource always reports the first byte-level problem found.
# =============================================================================

import ast
import logging
import math
import struct
from typing import Tuple, Union

import numpy as np

from edge.errors import (
    InvalidFormatError,
    SchemaError,
    ShapeMismatchError,
    TruncatedHeaderError,
    TruncatedPayloadError,
    UnsupportedVersionError,
)

logger = logging.getLogger(__name__)

NPY_MAGIC = b"\x93NUMPY"
SUPPORTED_VERSION = (1, 0)
PREAMBLE_SIZE = len(NPY_MAGIC) + 2 + 2
FLOAT32_DESCR = "<f4"
DEFAULT_ELEMENT_COUNT = 256

BytesLike = Union[bytes, bytearray, memoryview]

# Raised by ast.literal_eval on undecodable, non-literal, unhashable-key or
# pathologically nested headers
_LITERAL_ERRORS = (
    UnicodeDecodeError,
    ValueError,
    SyntaxError,
    TypeError,
    MemoryError,
    RecursionError,
)


def _parse_header(header_bytes: bytes) -> Tuple[Tuple[int, ...], str, bool]:
    """
    Parse the textual NPY header into (shape, descr, fortran_order).

    Raises:
        SchemaError: If the header is not a dict literal, has no valid
                     ``shape`` or declares a dtype other than float32.
    """
    try:
        header = ast.literal_eval(header_bytes.decode("ascii"))
    except _LITERAL_ERRORS as exc:
        raise SchemaError(f"Header is not a valid dict literal: {exc}") from None

    if not isinstance(header, dict):
        raise SchemaError(f"Header must be a dict, got {type(header).__name__}")

    shape = header.get("shape")
    if not isinstance(shape, tuple) or not all(
        isinstance(dim, int) and not isinstance(dim, bool) and dim >= 0 for dim in shape
    ):
        raise SchemaError(f"Header 'shape' is missing or invalid: {shape!r}")

    descr = header.get("descr")
    if descr != FLOAT32_DESCR:
        raise SchemaError(f"Unsupported dtype {descr!r}, expected {FLOAT32_DESCR!r}")

    fortran_order = header.get("fortran_order", False)
    if fortran_order:
        raise SchemaError("Fortran-ordered arrays are not supported")

    return shape, descr, bool(fortran_order)


def decode_npy(buffer: BytesLike, expected_count: int = DEFAULT_ELEMENT_COUNT) -> np.ndarray:
    """
    Decode an NPY v1.0 buffer holding ``expected_count`` float32 values.

    The result is always reshaped to ``(1, N)``, whether the header declared
    a 1-D or an N-D shape, and owns its memory (no view into ``buffer``).

    Args:
        buffer:         Raw bytes of the NPY resource.
        expected_count: Number of float32 elements the payload must hold.

    Returns:
        numpy.ndarray of shape (1, expected_count), dtype float32.

    Raises:
        InvalidFormatError:      Magic signature mismatch.
        UnsupportedVersionError: Version other than 1.0.
        TruncatedHeaderError:    Header length exceeds the buffer.
        SchemaError:             Missing shape or non-float32 dtype.
        ShapeMismatchError:      Declared element count != expected_count.
        TruncatedPayloadError:   Payload shorter than declared.
    """
    data = bytes(buffer)

    # 1. Magic
    if data[: len(NPY_MAGIC)] != NPY_MAGIC:
        raise InvalidFormatError(
            f"Bad magic signature {data[:len(NPY_MAGIC)]!r}, expected {NPY_MAGIC!r}"
        )

    # 2. Version
    if len(data) < len(NPY_MAGIC) + 2:
        raise TruncatedHeaderError(f"Buffer of {len(data)} bytes ends before the version field")
    version = (data[6], data[7])
    if version != SUPPORTED_VERSION:
        raise UnsupportedVersionError(f"NPY version {version[0]}.{version[1]} is not supported")

    # 3. Header length
    if len(data) < PREAMBLE_SIZE:
        raise TruncatedHeaderError(f"Buffer of {len(data)} bytes ends before the header length")
    (header_len,) = struct.unpack_from("<H", data, 8)
    payload_offset = PREAMBLE_SIZE + header_len
    if payload_offset > len(data):
        raise TruncatedHeaderError(
            f"Header declares {header_len} bytes but only "
            f"{len(data) - PREAMBLE_SIZE} remain"
        )

    # 4. Schema
    shape, _, _ = _parse_header(data[PREAMBLE_SIZE:payload_offset])

    # 5. Element count
    count = math.prod(shape)
    if count != expected_count:
        raise ShapeMismatchError(
            f"Shape {shape} holds {count} elements, expected {expected_count}"
        )

    # 6. Payload
    needed = count * 4
    available = len(data) - payload_offset
    if available < needed:
        raise TruncatedPayloadError(
            f"Payload holds {available} bytes, {needed} required for {count} float32 values"
        )

    values = np.frombuffer(data, dtype=FLOAT32_DESCR, count=count, offset=payload_offset)
    tensor = values.astype(np.float32).reshape(1, count)

    logger.debug("Decoded NPY tensor: header shape=%s → %s", shape, tensor.shape)
    return tensor
