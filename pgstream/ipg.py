"""Interface definitions for pgstream.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""

from zope.interface import Interface, Attribute



class IConnection(Interface):
    """The capabilities of a connection, as used by a result stream.

    All methods block; they must not be called from the reactor
    thread.
    """

    def getResult():
        """Return the next result of the active request, an object
        implementing IResult, or None when the request has no more
        results.
        """

    def cancel():
        """Request the cancellation of the active request.

        Returns when the request has been received by the backend.
        """

    def errorMessage():
        """Return the error message associated with the last command,
        or an empty string if there was no error.
        """


class IHandler(Interface):
    """Handler for asynchronous messages.
    """

    def notice(notice):
        """Handle a notice.
        """


class IRowConsumer(Interface):
    """An object that builds results from row data.

    Note that the data given is the raw data as returned by the
    backend.
    It is the responsibility of this interface to do parsing.
    """

    def description(data):
        """Handle the row description.

        This method will be called only if the command returns rows data.
        """

    def row(data):
        """Handle the row data.

        Return an object implementing the IResult interface, for a
        single tuple, or None if the row is not delivered on its own.
        """

    # cmdStatus, oidValue, cmdTuples
    def complete(status, oid, rows):
        """The command has complete, no more data.

        status is the command status flag (usually the name of the command)
        oid is the OID of the inserted row, if available
        rows is the number of rows affected by the command, as a string

        Note that for commands that return no rows, this will be the
        only method to be called.

        Return an object implementing the IResult interface.
        """

    def empty():
        """An empty query string was recognized.

        Return an object implementing the IResult interface.
        """

    def error(fields):
        """The command failed.

        fields is a dictionary with the error data.
        Return an object implementing the IResult interface.
        """


class IRowDescription(Interface):
    """A row description.
    """

    fname = Attribute("The field name")
    ftable = Attribute(
        """The OID of the table, if the field can be identified as a
        column, 0 otherwise"""
        )
    ftablecol = Attribute(
        """The attribute number of the column, if the field can be
        identified as a column, 0 otherwise"""
        )
    ftype = Attribute("The object ID of the field's data type")
    fsize = Attribute(
        """"The data type size. Negative values denotes
        variable-width types"""
        )
    fmod = Attribute("The type modifier")
    fformat = Attribute(
        "The format code being used for the field, 0 text, 1 binary"
        )


class IResult(Interface):
    """One result of a request.

    In single row mode, each row is delivered in its own result with
    status PGRES_SINGLE_TUPLE, and the end of a command with a result
    with no rows.
    """

    ntuples = Attribute(
        "The number of rows (tuples) in the result"
        )
    nfields = Attribute(
        """The number of columns (fields) in each row in the result"""
        )

    descriptions = Attribute(
        "A list of objects implementing IRowDescription"
        )

    status = Attribute("The status of the result")
    cmdStatus = Attribute(
        "The command status tag (usually the name of the command)"
        )
    cmdTuples = Attribute(
        """The number of the rows affected by the SQL command, as a
        decimal string; the empty string if not available"""
        )
    oidValue = Attribute("The OID of the inserted row, if available")
    error = Attribute(
        "The error data of a failed command, or an empty dictionary"
        )

    rows = Attribute(
        """A list of lists, containing the rows.
        Each value is the raw data sent by the backend, or None for
        NULL"""
        )

    def clear():
        """Release the data held by this result.
        """
