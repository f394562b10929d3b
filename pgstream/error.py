"""Exception class hierarchy for pgstream.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


# error field codes
PG_DIAG_SEVERITY = "S"
PG_DIAG_SQLSTATE = "C"
PG_DIAG_MESSAGE_PRIMARY = "M"
PG_DIAG_MESSAGE_DETAIL = "D"
PG_DIAG_MESSAGE_HINT = "H"
PG_DIAG_STATEMENT_POSITION = "P"
PG_DIAG_INTERNAL_POSITION = "p"
PG_DIAG_INTERNAL_QUERY = "q"
PG_DIAG_CONTEXT = "W"
PG_DIAG_SOURCE_FILE = "F"
PG_DIAG_SOURCE_LINE = "L"
PG_DIAG_SOURCE_FUNCTION = "R"

# canceling statement due to user request
QUERY_CANCELED = "57014"


class Error(Exception):
    pass

class PgError(Error):
    """A wrapper for a dictionary with PostgreSQL error data.
    """

    def __init__(self, fields):
        Error.__init__(self, fields)
        self.fields = fields

    def errorMessage(self):
        """Return the error message associated with this instance.
        """

        return self.fields.get(PG_DIAG_MESSAGE_PRIMARY, "")

    def errorField(self, field):
        """Return an individual field of an error report, or None if
        the specified field is not included.
        """

        return self.fields.get(field, None)

    def __str__(self):
        return str(self.fields)

class ExecutionFailed(PgError):
    """The server reported a fatal error (or a response we could not
    understand) while a result was being fetched.
    """

    def __init__(self, message, fields=None):
        fields = dict(fields or {})
        fields.setdefault(PG_DIAG_MESSAGE_PRIMARY, message)
        PgError.__init__(self, fields)
        self.message = message

    def __str__(self):
        return self.message

class InvalidRequest(Error):
    pass

class AuthenticationError(Error):
    pass

class UnsupportedError(Error):
    pass

class ProtocolDesync(Error):
    """An unexpected message sequence was received; the stream cannot
    continue.
    """

class UsageError(Error):
    """An operation was called in a state that does not allow it.
    """


class DecodeError(Error):
    """A column value could not be decoded.
    """

class TypeMismatch(DecodeError):
    def __init__(self, expected, actual, name=None):
        DecodeError.__init__(self, expected, actual)
        self.expected = expected # oid
        self.actual = actual
        self.name = name

    def __str__(self):
        if self.name is None:
            return "type mismatch: expected oid %d, got oid %d" % (
                self.expected, self.actual)
        return "type mismatch: expected %s (oid %d), got oid %d" % (
            self.name, self.expected, self.actual)

class Truncated(DecodeError):
    def __init__(self, needed, remaining):
        DecodeError.__init__(self, needed, remaining)
        self.needed = needed
        self.remaining = remaining

    def __str__(self):
        return "buffer truncated: %d bytes needed, %d remaining" % (
            self.needed, self.remaining)

class UnsupportedDimensionality(DecodeError, UnsupportedError):
    def __init__(self, ndim):
        DecodeError.__init__(self, ndim)
        self.ndim = ndim

    def __str__(self):
        return "only one dimensional arrays are supported, got %d" % \
            self.ndim

class NoActiveRow(DecodeError):
    """A row accessor was used while the stream was not positioned on
    its tuple.
    """
