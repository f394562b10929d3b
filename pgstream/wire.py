"""Cursor reads over a raw PostgreSQL value buffer.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from struct import Struct

from pgstream.error import Truncated


# all values are sent in network byte order
_bool = Struct("!?")
_int16 = Struct("!h")
_int32 = Struct("!i")
_int64 = Struct("!q")
_float32 = Struct("!f")
_float64 = Struct("!d")

_cache = {}


class WireReader(object):
    """A cursor over a buffer of binary encoded values.

    Every read checks the bytes remaining in the buffer and raises
    Truncated instead of reading past its end.
    """

    def __init__(self, data, offset=0):
        self.data = memoryview(data)
        self.offset = offset

    def remaining(self):
        return len(self.data) - self.offset

    def _check(self, size):
        remaining = len(self.data) - self.offset
        if size > remaining:
            raise Truncated(size, max(remaining, 0))

    def _unpack(self, st):
        self._check(st.size)
        (v,) = st.unpack_from(self.data, self.offset)
        self.offset += st.size
        return v

    def readFixed(self, fmt):
        """Read a single value with the given struct format (without
        byte order prefix) and advance the cursor.
        """

        st = _cache.get(fmt)
        if st is None:
            st = _cache[fmt] = Struct("!" + fmt)

        return self._unpack(st)

    def readBool(self):
        return self._unpack(_bool)

    def readInt16(self):
        return self._unpack(_int16)

    def readInt32(self):
        return self._unpack(_int32)

    def readInt64(self):
        return self._unpack(_int64)

    def readFloat32(self):
        # reinterpret the bit pattern, not a numeric conversion
        return self._unpack(_float32)

    def readFloat64(self):
        return self._unpack(_float64)

    def readBytes(self, size):
        """Read size raw bytes.
        """

        if size < 0:
            raise ValueError("negative size %d" % size)

        self._check(size)
        v = self.data[self.offset:self.offset + size].tobytes()
        self.offset += size
        return v

    def readRest(self):
        return self.readBytes(self.remaining())
