"""
introspection.py - Read-only view of the executing batch

The host serializes the whole batch into a byte buffer (the instructions
view) and hands it to every call through a fixed, well-known account. A
program parses that buffer with BatchIntrospector to see its siblings.

The buffer layout (all integers little-endian):

    u16 count
    u16 offset[count]                          absolute offset of each record
    record:
        u16 num_accounts
        num_accounts * (u8 flags, 32B pubkey)  bit0 = signer, bit1 = writable
        32B program_id
        u16 data_len
        data_len bytes
    [u16 current_index]                        trailer, absent if no index

The batch length comes from the leading count field. Every read is bounds
checked, and the introspector never trusts the buffer to be well formed.
"""

from __future__ import annotations
import struct
from typing import List, Optional, Sequence, Tuple

from .core import (
    Pubkey, AccountMeta, Call,
    IndexOutOfRange, InvalidBatchData, InvalidIndex,
    PUBKEY_BYTES, U16_MAX,
)


FLAG_SIGNER = 0b01
FLAG_WRITABLE = 0b10

_U16 = struct.Struct("<H")


# =============================================================================
# SERIALIZATION
# =============================================================================

def _serialize_call(call: Call) -> bytes:
    record = bytearray(_U16.pack(len(call.accounts)))
    for meta in call.accounts:
        flags = 0
        if meta.is_signer:
            flags |= FLAG_SIGNER
        if meta.is_writable:
            flags |= FLAG_WRITABLE
        record.append(flags)
        record += bytes(meta.pubkey)
    record += bytes(call.program_id)
    record += _U16.pack(len(call.data))
    record += call.data
    return bytes(record)


def serialize_calls(calls: Sequence[Call], current_index: Optional[int] = None) -> bytes:
    """
    Serialize a batch into the instructions-view layout.

    Args:
        calls: The batch's calls in execution order.
        current_index: Position of the executing call, or None to omit the trailer.

    Raises:
        ValueError: If the batch does not fit the u16 counts and offsets.
    """
    if len(calls) > U16_MAX:
        raise ValueError(f"batch has too many calls: {len(calls)}")
    records = [_serialize_call(call) for call in calls]

    offsets: List[int] = []
    cursor = _U16.size * (1 + len(calls))
    for record in records:
        if cursor > U16_MAX:
            raise ValueError("batch too large for u16 offsets")
        offsets.append(cursor)
        cursor += len(record)

    out = bytearray(_U16.pack(len(calls)))
    for offset in offsets:
        out += _U16.pack(offset)
    for record in records:
        out += record
    if current_index is not None:
        if not 0 <= current_index <= U16_MAX:
            raise ValueError(f"current index out of u16 range: {current_index}")
        out += _U16.pack(current_index)
    return bytes(out)


# =============================================================================
# PARSING
# =============================================================================

class _Reader:
    """Cursor over a byte buffer; every read past the end raises InvalidBatchData."""

    def __init__(self, data: bytes, position: int = 0):
        self.data = data
        self.position = position

    def take(self, size: int) -> bytes:
        end = self.position + size
        if self.position < 0 or end > len(self.data):
            raise InvalidBatchData(
                f"read of {size} bytes at {self.position} past end of {len(self.data)}-byte view"
            )
        chunk = self.data[self.position:end]
        self.position = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return _U16.unpack(self.take(_U16.size))[0]


def _parse_call(data: bytes, offset: int) -> Tuple[Call, int]:
    """Parse one record; return the call and the offset just past it."""
    reader = _Reader(data, offset)
    num_accounts = reader.u16()
    accounts = []
    for _ in range(num_accounts):
        flags = reader.u8()
        pubkey = Pubkey(reader.take(PUBKEY_BYTES))
        accounts.append(AccountMeta(
            pubkey,
            is_signer=bool(flags & FLAG_SIGNER),
            is_writable=bool(flags & FLAG_WRITABLE),
        ))
    program_id = Pubkey(reader.take(PUBKEY_BYTES))
    data_len = reader.u16()
    payload = reader.take(data_len)
    return Call(program_id, tuple(accounts), payload), reader.position


class BatchIntrospector:
    """
    Read-only access to the calls of the batch currently executing.

    The introspector is the only channel through which one call learns
    about another. Everything it returns originates with whoever assembled
    the batch, so consumers must re-validate program ids, tags and account
    positions on every call they inspect.

    Example:
        view = BatchIntrospector(ctx.instructions_data(INSTRUCTIONS_SYSVAR_ID))
        last = view.call_at(view.total_calls() - 1)
    """

    def __init__(self, data: bytes):
        self._data = bytes(data)
        reader = _Reader(self._data)
        count = reader.u16()
        offsets = [reader.u16() for _ in range(count)]

        calls: List[Call] = []
        end = reader.position
        for offset in offsets:
            call, record_end = _parse_call(self._data, offset)
            calls.append(call)
            end = max(end, record_end)
        self._calls: Tuple[Call, ...] = tuple(calls)

        trailer = len(self._data) - end
        if trailer == 0:
            self._current_index: Optional[int] = None
        elif trailer == _U16.size:
            self._current_index = _U16.unpack_from(self._data, end)[0]
        else:
            raise InvalidBatchData(f"{trailer} unexpected trailing bytes in instructions view")

    @classmethod
    def from_calls(cls, calls: Sequence[Call], current_index: Optional[int] = None) -> BatchIntrospector:
        """Build an introspector directly from calls (serializes, then parses)."""
        return cls(serialize_calls(calls, current_index))

    def current_call_index(self) -> int:
        """
        Position of the top-level call now executing.

        Raises:
            InvalidIndex: If the view carries no current index.
        """
        if self._current_index is None:
            raise InvalidIndex("instructions view has no current index")
        return self._current_index

    def total_calls(self) -> int:
        return len(self._calls)

    def call_at(self, index: int) -> Call:
        """
        Return the call at a position.

        Raises:
            IndexOutOfRange: If index is outside [0, total_calls()).
        """
        if not 0 <= index < len(self._calls):
            raise IndexOutOfRange(f"call index {index} outside [0, {len(self._calls)})")
        return self._calls[index]

    def current_call(self) -> Call:
        return self.call_at(self.current_call_index())

    def __repr__(self) -> str:
        return f"BatchIntrospector({len(self._calls)} calls, current={self._current_index})"
