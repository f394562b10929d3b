"""Helpers for testing code that reads PostgreSQL results.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from collections import deque
from struct import pack

from zope.interface import implementer

from pgstream import ipg, pgtype
from pgstream.error import QUERY_CANCELED
from pgstream.protocol import (Result, RowDescription, PGRES_SINGLE_TUPLE,
                               PGRES_TUPLES_OK, PGRES_COMMAND_OK,
                               PGRES_FATAL_ERROR, FORMAT_BINARY)


#
# Binary encoding of values, the inverse of pgtype decoding
#
def _encodeDate(v):
    return pack("!i", v.seconds // pgtype.SECONDS_PER_DAY -
                pgtype.DAYS_UNIX_TO_J2000_EPOCH)

def _encodeTimestamp(v):
    return pack("!q", v.microseconds - pgtype.MICROSEC_UNIX_TO_J2000_EPOCH)

_encoders = {
    pgtype.BOOL: lambda v: pack("!?", v),
    pgtype.INT2: lambda v: pack("!h", v),
    pgtype.INT4: lambda v: pack("!i", v),
    pgtype.INT8: lambda v: pack("!q", v),
    pgtype.FLOAT4: lambda v: pack("!f", v),
    pgtype.FLOAT8: lambda v: pack("!d", v),
    pgtype.TEXT: lambda v: v.encode("utf-8"),
    pgtype.CHAR: lambda v: bytes([ord(v)]),
    pgtype.BYTEA: bytes,
    pgtype.DATE: _encodeDate,
    pgtype.TIME: lambda v: pack("!q", v.microseconds),
    pgtype.TIMETZ: lambda v: pack("!qi", v.microseconds, v.zone),
    pgtype.TIMESTAMP: _encodeTimestamp,
    pgtype.TIMESTAMPTZ: _encodeTimestamp,
    pgtype.INTERVAL: lambda v: pack("!qii", v.microseconds, v.days, v.months),
    }


def encode(type, value):
    """Return the binary representation of value, as sent by the
    server for a column of the given PgType.
    """

    return _encoders[type](value)

def encodeArray(type, values, elemType=None, ndim=1):
    """Return the binary representation of a one dimensional array.

    None values are NULL elements.
    """

    if elemType is None:
        elemType = type.oids[0]

    hasNull = int(None in values)
    if ndim == 0:
        return pack("!iii", 0, hasNull, elemType)

    data = [pack("!iii", ndim, hasNull, elemType)]
    data.append(pack("!ii", len(values), 1) * ndim)
    for value in values:
        if value is None:
            data.append(pack("!i", -1))
        else:
            v = encode(type, value)
            data.append(pack("!i", len(v)) + v)

    return b"".join(data)


#
# Results
#
def column(name, oid, fformat=FORMAT_BINARY):
    return RowDescription(name, 0, 0, oid, -1, -1, fformat)

def tupleResult(descriptions, row):
    """A single tuple result, row is a list of raw values."""

    return Result(PGRES_SINGLE_TUPLE, descriptions, [list(row)])

def tuplesOk(descriptions, rows):
    result = Result(PGRES_TUPLES_OK, descriptions)
    result.cmdStatus = "SELECT"
    result.cmdTuples = str(rows)
    return result

def commandOk(status, rows=""):
    result = Result(PGRES_COMMAND_OK)
    result.cmdStatus = status
    result.cmdTuples = str(rows)
    return result

def errorResult(message, code="42703"):
    return Result(PGRES_FATAL_ERROR,
                  error={"S": "ERROR", "C": code, "M": message})

def selectResults(descriptions, rows):
    """All the results of a query returning rows, in single row mode,
    followed by the end of the request.
    """

    results = [tupleResult(descriptions, row) for row in rows]
    results.append(tuplesOk(descriptions, len(rows)))
    results.append(None)
    return results


@implementer(ipg.IConnection)
class ScriptedConnection(object):
    """An in memory connection, returning a prepared sequence of
    results.

    The end of each request is marked by None, as with libpq.
    A cancel request drops the rows of the current request not yet
    returned, replacing them with a query canceled error, as a server
    would do.
    """

    def __init__(self, results=()):
        self.results = deque(results)
        self.cancelled = 0
        self.fetched = 0
        self.lastError = ""
        self.cleared = []

    def add(self, results):
        self.results.extend(results)

    def pending(self):
        return len(self.results)

    def getResult(self):
        if not self.results:
            raise AssertionError("no request in progress")

        self.fetched += 1
        result = self.results.popleft()
        if result is not None:
            if result.status == PGRES_FATAL_ERROR and "M" in result.error:
                self.lastError = result.error["M"]

            # record the release of the result
            clear = result.clear
            def _clear(result=result, clear=clear):
                self.cleared.append(result)
                clear()
            result.clear = _clear

        return result

    def cancel(self):
        self.cancelled += 1

        dropped = False
        while self.results and self.results[0] is not None:
            self.results.popleft()
            dropped = True

        if dropped:
            self.results.appendleft(
                errorResult("canceling statement due to user request",
                            QUERY_CANCELED)
                )

    def errorMessage(self):
        return self.lastError


#
# Backend messages
#
def message(opcode, payload=b""):
    return pack("!cI", opcode, len(payload) + 4) + payload

def authenticationOk():
    return message(b"R", pack("!I", 0))

def parameterStatus(key, value):
    return message(b"S", key.encode() + b"\0" + value.encode() + b"\0")

def backendKeyData(pid, key):
    return message(b"K", pack("!II", pid, key))

def readyForQuery(status=b"I"):
    return message(b"Z", status)

def rowDescription(columns):
    """columns is a list of (name, oid, format) tuples."""

    data = [pack("!H", len(columns))]
    for name, oid, fformat in columns:
        data.append(name.encode("utf-8") + b"\0")
        data.append(pack("!IhIhih", 0, 0, oid, -1, -1, fformat))

    return message(b"T", b"".join(data))

def dataRow(values):
    data = [pack("!H", len(values))]
    for value in values:
        if value is None:
            data.append(pack("!i", -1))
        else:
            data.append(pack("!i", len(value)) + value)

    return message(b"D", b"".join(data))

def commandComplete(tag):
    return message(b"C", tag.encode("ascii") + b"\0")

def errorResponse(fields):
    data = b"".join(key.encode() + val.encode() + b"\0"
                    for key, val in fields.items())
    return message(b"E", data + b"\0")

def noticeResponse(fields):
    data = b"".join(key.encode() + val.encode() + b"\0"
                    for key, val in fields.items())
    return message(b"N", data + b"\0")
