'''
Bounds-checked little-endian reader over an in-memory buffer
'''

import struct

from ..common import *


class BinaryReader:
    '''Sequential reader; every read past the end raises TruncatedInputError'''

    def __init__(self, data: bytes, position: int = 0):
        self.data = bytes(data)
        self.position = position

    @property
    def remaining(self) -> int:
        return len(self.data) - self.position

    def at_end(self) -> bool:
        return self.position >= len(self.data)

    def _take(self, size: int, what: str) -> bytes:
        if size < 0 or size > self.remaining:
            raise TruncatedInputError(self.position, size, self.remaining, what)

        start = self.position
        self.position += size
        return self.data[start:self.position]

    def read_bytes(self, size: int, what: str = 'bytes') -> bytes:
        return self._take(size, what)

    def read_u8(self) -> int:
        return self._take(1, 'u8')[0]

    def read_u16(self) -> int:
        return struct.unpack('<H', self._take(2, 'u16'))[0]

    def read_i16(self) -> int:
        return struct.unpack('<h', self._take(2, 'i16'))[0]

    def read_u32(self) -> int:
        return struct.unpack('<I', self._take(4, 'u32'))[0]

    def read_i32(self) -> int:
        return struct.unpack('<i', self._take(4, 'i32'))[0]

    def read_u64(self) -> int:
        return struct.unpack('<Q', self._take(8, 'u64'))[0]

    def read_f64(self) -> float:
        return struct.unpack('<d', self._take(8, 'f64'))[0]

    def read_leb128(self) -> int:
        '''Unsigned LEB128 limited to 32 bits'''
        start = self.position
        result = 0
        shift = 0
        while True:
            if self.at_end():
                raise TruncatedInputError(start, self.position - start + 1, 0, 'leb128')

            byte = self.data[self.position]
            self.position += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                break

            shift += 7
            if shift >= 32 + 7:
                raise FormatError(f'invalid leb128 at offset {start}')

        if result > 0xFFFFFFFF:
            raise FormatError(f'leb128 overflow at offset {start}')

        return result

    def read_sleb128(self) -> int:
        '''Signed LEB128 (int32)'''
        start = self.position
        result = 0
        shift = 0
        while True:
            if self.at_end():
                raise TruncatedInputError(start, self.position - start + 1, 0, 'sleb128')

            byte = self.data[self.position]
            self.position += 1
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break

            if shift >= 32 + 7:
                raise FormatError(f'invalid sleb128 at offset {start}')

        if byte & 0x40:
            result -= 1 << shift

        # wrap to int32 like the C reader
        result &= 0xFFFFFFFF
        return result - (1 << 32) if result & 0x80000000 else result

    def read_string(self) -> str:
        '''QuickJS string: leb128 (len << 1 | is_wide) followed by latin1 or UTF-16LE data'''
        len_flags = self.read_leb128()
        length = len_flags >> 1
        if len_flags & 1:
            raw = self._take(length * 2, 'utf-16 string')
            return ''.join(chr(unit) for unit in struct.unpack(f'<{length}H', raw))

        return self._take(length, 'string').decode('latin-1')
