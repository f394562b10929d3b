"""Typed access to the current row of a result stream.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from pgstream import pgtype
from pgstream.error import DecodeError, UnsupportedError


# format codes
FORMAT_TEXT = 0
FORMAT_BINARY = 1


class RowView(object):
    """A view over the tuple a ResultStream is positioned on.

    The view is valid only as long as the stream stays on the tuple it
    was created for; after the stream advances every method raises
    NoActiveRow.
    """

    def __init__(self, stream):
        self.stream = stream
        self.num = stream.num

    def _result(self):
        return self.stream.tuple(self.num)

    def _description(self, result, column):
        if not 0 <= column < result.nfields:
            raise DecodeError("column number %d is out of range 0..%d" % (
                column, result.nfields - 1))

        return result.descriptions[column]

    @property
    def nfields(self):
        return self._result().nfields

    def __len__(self):
        return self.nfields

    def __getitem__(self, key):
        """Return the raw value of a column, given its number or name;
        None for NULL.
        """

        result = self._result()
        if isinstance(key, str):
            column = self.columnNumber(key)
            if column < 0:
                raise KeyError(key)
        else:
            column = key
            self._description(result, column)

        return result.rows[0][column]

    def isNull(self, column):
        """Test a column for a null value.
        """

        result = self._result()
        self._description(result, column)
        return result.rows[0][column] is None

    def columnName(self, column):
        result = self._result()
        return self._description(result, column).fname

    def columnNumber(self, name):
        """Return the column number associated with the given column
        name, or -1.
        """

        result = self._result()
        for i, desc in enumerate(result.descriptions):
            if desc.fname == name:
                return i

        return -1

    def columnType(self, column):
        """Return the oid of the column data type.
        """

        result = self._result()
        return self._description(result, column).ftype

    def get(self, column, type, default=None):
        """Return the value of a column, decoded as the given PgType.

        The type of the column is checked against the requested one,
        unless the stream was created with validation disabled.
        A NULL value is returned as default, or as the default of the
        type.
        """

        result = self._result()
        desc = self._description(result, column)
        if self.stream.validate:
            type.checkOid(desc.ftype)

        value = result.rows[0][column]
        if value is None:
            return type.default if default is None else default

        if desc.fformat == FORMAT_TEXT:
            if type is pgtype.TEXT:
                return value.decode("utf-8")
            if type is pgtype.BYTEA:
                return value

            raise UnsupportedError(
                "column %d is in text format, it can only be read as "
                "text or bytea" % column
                )

        return type.decode(value)

    def asArray(self, column, type, default=None):
        """Return the value of a one dimensional array column, as a
        list of elements decoded as the given PgType.

        NULL elements are replaced by default, or by the default of the
        type; a NULL column is returned as the empty list.
        """

        result = self._result()
        desc = self._description(result, column)
        if self.stream.validate:
            type.checkArrayOid(desc.ftype)

        value = result.rows[0][column]
        if value is None:
            return []

        if desc.fformat != FORMAT_BINARY:
            raise UnsupportedError(
                "column %d is in text format, arrays can only be read "
                "in binary format" % column
                )

        return pgtype.decodeArray(type, value, default, self.stream.validate)

    def value(self, column):
        """Return the value of a column, decoded according to the
        type reported by the server; None for NULL.
        """

        result = self._result()
        desc = self._description(result, column)
        raw = result.rows[0][column]
        if raw is None:
            return None

        if desc.fformat == FORMAT_TEXT:
            return raw.decode("utf-8")

        type = pgtype.typeForOid(desc.ftype)
        if type is not None:
            return type.decode(raw)

        type = pgtype.typeForArrayOid(desc.ftype)
        if type is not None:
            return pgtype.decodeArray(type, raw, None, self.stream.validate)

        raise UnsupportedError("no decoder for type oid %d" % desc.ftype)

    def values(self):
        """Return a list with the values of all the columns.
        """

        return [self.value(i) for i in range(self.nfields)]
