"""
Register Data Codec

Converts raw 16-bit register words to typed engineering values and back.

Byte orders name the wire arrangement of bytes A (most significant)
through D (least significant):
- 16-bit: AB (as-is), BA (bytes swapped)
- 32-bit: ABCD (big-endian), CDAB (word swap), BADC (byte swap within
  words), DCBA (fully reversed)

Every rearrangement is its own inverse, so encode applies the same
permutation decode does.
"""

import math
import struct

from fieldgate.common.config import ByteOrder, DataType, check_byte_order
from fieldgate.common.exceptions import DecodeError, EncodeError


_STRUCT_FORMATS = {
    DataType.INT16: ">h",
    DataType.UINT16: ">H",
    DataType.INT32: ">i",
    DataType.UINT32: ">I",
    DataType.FLOAT32: ">f",
}

# Index into the canonical big-endian bytes for each wire position
_PERMUTATIONS = {
    ByteOrder.AB: (0, 1),
    ByteOrder.BA: (1, 0),
    ByteOrder.ABCD: (0, 1, 2, 3),
    ByteOrder.CDAB: (2, 3, 0, 1),
    ByteOrder.BADC: (1, 0, 3, 2),
    ByteOrder.DCBA: (3, 2, 1, 0),
}


def register_count(data_type: DataType | str) -> int:
    """Number of 16-bit registers a data type occupies"""
    return DataType.parse(data_type).word_count


def _reorder(data: bytes, byte_order: ByteOrder) -> bytes:
    return bytes(data[i] for i in _PERMUTATIONS[byte_order])


def _words_to_bytes(words: list[int]) -> bytes:
    out = bytearray()
    for word in words:
        if not isinstance(word, int) or not 0 <= word <= 0xFFFF:
            raise DecodeError(f"Register word out of range: {word!r}")
        out += word.to_bytes(2, "big")
    return bytes(out)


def decode_raw(
    words: list[int],
    data_type: DataType | str,
    byte_order: ByteOrder | str | None = None,
) -> int | float:
    """
    Interpret register words as an unscaled value.

    Raises:
        DecodeError: buffer too short or float is not finite
        ConfigurationError: byte order does not fit the data type
    """
    data_type = DataType.parse(data_type)
    order = check_byte_order(
        data_type, byte_order if byte_order is not None else _default_order(data_type)
    )

    count = data_type.word_count
    if len(words) < count:
        raise DecodeError(
            f"{data_type.value} needs {count} register(s), got {len(words)}"
        )

    data = _reorder(_words_to_bytes(list(words[:count])), order)
    value = struct.unpack(_STRUCT_FORMATS[data_type], data)[0]

    if data_type == DataType.FLOAT32 and (math.isnan(value) or math.isinf(value)):
        raise DecodeError(f"Non-finite float32 value: {value}")
    return value


def scale_value(raw: int | float, scaling_factor: float = 1.0, decimal_point: int = 0) -> int | float:
    """Divide by the scaling factor and round to the decimal precision"""
    if scaling_factor <= 0:
        raise ValueError("scaling_factor must be > 0")
    scaled = raw / scaling_factor
    if decimal_point <= 0:
        return int(round(scaled))
    return round(scaled, decimal_point)


def decode(
    words: list[int],
    data_type: DataType | str,
    byte_order: ByteOrder | str | None = None,
    scaling_factor: float = 1.0,
    decimal_point: int = 0,
) -> int | float:
    """
    Decode register words to an engineering value.

    Result is ``round(raw / scaling_factor, decimal_point)``, an int when
    ``decimal_point`` is 0.
    """
    raw = decode_raw(words, data_type, byte_order)
    return scale_value(raw, scaling_factor, decimal_point)


def encode(
    value: int | float,
    data_type: DataType | str,
    byte_order: ByteOrder | str | None = None,
    scaling_factor: float = 1.0,
) -> list[int]:
    """
    Encode an engineering value to register words.

    The value is multiplied by the scaling factor; integer types round to
    the nearest whole number and must fit the type's range.

    Raises:
        EncodeError: non-numeric, non-finite or out-of-range value
        ConfigurationError: byte order does not fit the data type
    """
    data_type = DataType.parse(data_type)
    order = check_byte_order(
        data_type, byte_order if byte_order is not None else _default_order(data_type)
    )

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EncodeError(f"Value must be numeric, got {value!r}")
    if scaling_factor <= 0:
        raise EncodeError("Scaling factor must be > 0")
    if isinstance(value, float) and not math.isfinite(value):
        raise EncodeError(f"Cannot encode non-finite value {value}")

    raw = value * scaling_factor

    try:
        if data_type == DataType.FLOAT32:
            packed = struct.pack(">f", float(raw))
        else:
            packed = struct.pack(_STRUCT_FORMATS[data_type], int(round(raw)))
    except (struct.error, OverflowError):
        raise EncodeError(
            f"Value {value} (raw {raw}) out of range for {data_type.value}"
        ) from None

    if data_type == DataType.FLOAT32 and math.isinf(struct.unpack(">f", packed)[0]):
        raise EncodeError(f"Value {value} out of range for float32")

    data = _reorder(packed, order)
    return [int.from_bytes(data[i:i + 2], "big") for i in range(0, len(data), 2)]


def _default_order(data_type: DataType) -> ByteOrder:
    return ByteOrder.AB if data_type.word_count == 1 else ByteOrder.ABCD
