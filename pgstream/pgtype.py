"""PostgreSQL types supported by pgstream, and their binary decoding.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


import datetime
from collections import namedtuple

from pgstream.error import DecodeError, TypeMismatch, UnsupportedDimensionality
from pgstream.wire import WireReader


# type oids, from the server catalog (src/include/catalog/pg_type.h)
BOOLOID = 16
BYTEAOID = 17
CHAROID = 18
NAMEOID = 19
INT8OID = 20
INT2OID = 21
INT4OID = 23
TEXTOID = 25
FLOAT4OID = 700
FLOAT8OID = 701
BPCHAROID = 1042
VARCHAROID = 1043
DATEOID = 1082
TIMEOID = 1083
TIMESTAMPOID = 1114
TIMESTAMPTZOID = 1184
INTERVALOID = 1186
TIMETZOID = 1266

# array types
BOOLARRAYOID = 1000
BYTEAARRAYOID = 1001
CHARARRAYOID = 1002
NAMEARRAYOID = 1003
INT2ARRAYOID = 1005
INT4ARRAYOID = 1007
TEXTARRAYOID = 1009
BPCHARARRAYOID = 1014
VARCHARARRAYOID = 1015
INT8ARRAYOID = 1016
FLOAT4ARRAYOID = 1021
FLOAT8ARRAYOID = 1022
TIMESTAMPARRAYOID = 1115
DATEARRAYOID = 1182
TIMEARRAYOID = 1183
TIMESTAMPTZARRAYOID = 1185
INTERVALARRAYOID = 1187
TIMETZARRAYOID = 1270

# the server counts dates and timestamps from 2000-01-01
DAYS_UNIX_TO_J2000_EPOCH = 10957
MICROSEC_UNIX_TO_J2000_EPOCH = DAYS_UNIX_TO_J2000_EPOCH * 86400 * 1000000

SECONDS_PER_DAY = 86400
MICROSEC_PER_SECOND = 1000000

_UNIX_EPOCH = datetime.datetime(1970, 1, 1)
_UNIX_EPOCH_UTC = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


#
# Temporal values
#
class Date(namedtuple("Date", "seconds")):
    """A date, as seconds since the Unix epoch.
    """

    __slots__ = ()

    def toDate(self):
        return _UNIX_EPOCH.date() + \
            datetime.timedelta(days=self.seconds // SECONDS_PER_DAY)

class Time(namedtuple("Time", "microseconds")):
    """Time of day, as microseconds since midnight.
    """

    __slots__ = ()

    def toTime(self, tzinfo=None):
        seconds, us = divmod(self.microseconds, MICROSEC_PER_SECOND)
        minutes, s = divmod(seconds, 60)
        h, m = divmod(minutes, 60)
        # 24:00:00 is a valid time for the server, not for Python
        return datetime.time(h % 24, m, s, us, tzinfo)

class TimeTz(namedtuple("TimeTz", "microseconds zone")):
    """Time of day with time zone.

    zone is the offset in seconds west of UTC, as sent by the server.
    """

    __slots__ = ()

    def toTime(self):
        tz = datetime.timezone(datetime.timedelta(seconds=-self.zone))
        return Time(self.microseconds).toTime(tz)

class Timestamp(namedtuple("Timestamp", "microseconds")):
    """A timestamp without time zone, as microseconds since the Unix
    epoch.
    """

    __slots__ = ()

    def toDatetime(self):
        return _UNIX_EPOCH + \
            datetime.timedelta(microseconds=self.microseconds)

class TimestampTz(namedtuple("TimestampTz", "microseconds")):
    """A timestamp with time zone, as microseconds since the Unix
    epoch, UTC.
    """

    __slots__ = ()

    def toDatetime(self):
        return _UNIX_EPOCH_UTC + \
            datetime.timedelta(microseconds=self.microseconds)

class Interval(namedtuple("Interval", "microseconds days months")):
    __slots__ = ()

    def toTimedelta(self):
        if self.months:
            raise ValueError("an interval with months has no fixed length")

        return datetime.timedelta(days=self.days,
                                  microseconds=self.microseconds)


#
# Decoding of a single value
#
def _readBool(buf, size):
    return buf.readBool()

def _readInt16(buf, size):
    return buf.readInt16()

def _readInt32(buf, size):
    return buf.readInt32()

def _readInt64(buf, size):
    return buf.readInt64()

def _readFloat32(buf, size):
    return buf.readFloat32()

def _readFloat64(buf, size):
    return buf.readFloat64()

def _readText(buf, size):
    return buf.readBytes(size).decode("utf-8")

def _readChar(buf, size):
    # the "char" type is a single byte, not a character
    return chr(buf.readBytes(1)[0])

def _readBytea(buf, size):
    return buf.readBytes(size)

def _readDate(buf, size):
    return Date((buf.readInt32() + DAYS_UNIX_TO_J2000_EPOCH) * SECONDS_PER_DAY)

def _readTime(buf, size):
    return Time(buf.readInt64())

def _readTimeTz(buf, size):
    microseconds = buf.readInt64()
    zone = buf.readInt32()
    return TimeTz(microseconds, zone)

def _readTimestamp(buf, size):
    return Timestamp(buf.readInt64() + MICROSEC_UNIX_TO_J2000_EPOCH)

def _readTimestampTz(buf, size):
    return TimestampTz(buf.readInt64() + MICROSEC_UNIX_TO_J2000_EPOCH)

def _readInterval(buf, size):
    microseconds = buf.readInt64()
    days = buf.readInt32()
    months = buf.readInt32()
    return Interval(microseconds, days, months)


class PgType(object):
    """A semantic type we know how to decode.

    oids are the column types accepted by this type, arrayOids the
    types of array columns whose elements are of this type.
    size is the length of the binary value, or None for variable
    length types.
    """

    def __init__(self, name, oids, arrayOids, default, size, read):
        self.name = name
        self.oids = oids
        self.arrayOids = arrayOids
        self.default = default
        self.size = size
        self.read = read

    def __repr__(self):
        return "<PgType %s>" % self.name

    def checkOid(self, actual):
        if actual not in self.oids:
            raise TypeMismatch(self.oids[0], actual, self.name)

    def checkArrayOid(self, actual):
        if actual not in self.arrayOids:
            raise TypeMismatch(self.arrayOids[0], actual, self.name + "[]")

    def decode(self, data):
        """Decode a single binary value.
        """

        size = len(data)
        if self.size is not None and size > self.size:
            raise DecodeError("%s value of %d bytes, expected %d" % (
                self.name, size, self.size))

        return self.read(WireReader(data), size)


BOOL = PgType("bool", (BOOLOID,), (BOOLARRAYOID,), False, 1, _readBool)
INT2 = PgType("int2", (INT2OID,), (INT2ARRAYOID,), 0, 2, _readInt16)
INT4 = PgType("int4", (INT4OID,), (INT4ARRAYOID,), 0, 4, _readInt32)
INT8 = PgType("int8", (INT8OID,), (INT8ARRAYOID,), 0, 8, _readInt64)
FLOAT4 = PgType("float4", (FLOAT4OID,), (FLOAT4ARRAYOID,), 0.0, 4,
                _readFloat32)
FLOAT8 = PgType("float8", (FLOAT8OID,), (FLOAT8ARRAYOID,), 0.0, 8,
                _readFloat64)
TEXT = PgType("text", (TEXTOID, VARCHAROID, BPCHAROID, NAMEOID),
              (TEXTARRAYOID, VARCHARARRAYOID, BPCHARARRAYOID, NAMEARRAYOID),
              "", None, _readText)
CHAR = PgType('"char"', (CHAROID,), (CHARARRAYOID,), "\0", 1, _readChar)
BYTEA = PgType("bytea", (BYTEAOID,), (BYTEAARRAYOID,), b"", None, _readBytea)
DATE = PgType("date", (DATEOID,), (DATEARRAYOID,), Date(0), 4, _readDate)
TIME = PgType("time", (TIMEOID,), (TIMEARRAYOID,), Time(0), 8, _readTime)
TIMETZ = PgType("timetz", (TIMETZOID,), (TIMETZARRAYOID,), TimeTz(0, 0), 12,
                _readTimeTz)
TIMESTAMP = PgType("timestamp", (TIMESTAMPOID,), (TIMESTAMPARRAYOID,),
                   Timestamp(0), 8, _readTimestamp)
TIMESTAMPTZ = PgType("timestamptz", (TIMESTAMPTZOID,), (TIMESTAMPTZARRAYOID,),
                     TimestampTz(0), 8, _readTimestampTz)
INTERVAL = PgType("interval", (INTERVALOID,), (INTERVALARRAYOID,),
                  Interval(0, 0, 0), 16, _readInterval)

TYPES = (BOOL, INT2, INT4, INT8, FLOAT4, FLOAT8, TEXT, CHAR, BYTEA,
         DATE, TIME, TIMETZ, TIMESTAMP, TIMESTAMPTZ, INTERVAL)

_byOid = {}
_byArrayOid = {}
for _t in TYPES:
    for _oid in _t.oids:
        _byOid[_oid] = _t
    for _oid in _t.arrayOids:
        _byArrayOid[_oid] = _t
del _t, _oid


def typeForOid(oid):
    """Return the PgType for a column type oid, or None.
    """

    return _byOid.get(oid)

def typeForArrayOid(oid):
    """Return the PgType of the elements of an array column type oid,
    or None.
    """

    return _byArrayOid.get(oid)


def decodeArray(pgtype, data, default=None, validate=True):
    """Decode a binary one dimensional array.

    The data looks like this:

      int32 ndim;     number of dimensions
      int32 flags;    has nulls, ignored
      int32 elemtype; oid of the element type

      int32 size;     number of elements of the first dimension
      int32 lbound;   index of the first element, ignored

    followed by size elements, each one prefixed by its int32 length;
    a length of -1 is a NULL element, replaced by default.
    """

    buf = WireReader(data)
    ndim = buf.readInt32()
    buf.readInt32()
    elemType = buf.readInt32()
    if validate:
        pgtype.checkOid(elemType)

    if ndim == 0:
        # the empty array has no dimensions
        return []
    if ndim != 1:
        raise UnsupportedDimensionality(ndim)

    size = buf.readInt32()
    buf.readInt32()

    if default is None:
        default = pgtype.default

    array = []
    for i in range(size):
        length = buf.readInt32()
        if length == -1:
            array.append(default)
        elif length < 0:
            raise DecodeError("invalid length %d for array element %d" % (
                    length, i))
        else:
            array.append(pgtype.decode(buf.readBytes(length)))

    return array
