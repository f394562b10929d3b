"""Streaming of the results of a request, one row at a time.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from twisted.python import log

from pgstream.error import (Error, ExecutionFailed, NoActiveRow,
                            ProtocolDesync, UsageError,
                            PG_DIAG_MESSAGE_PRIMARY, PG_DIAG_SQLSTATE,
                            QUERY_CANCELED)
from pgstream.protocol import (PGRES_EMPTY_QUERY, PGRES_COMMAND_OK,
                               PGRES_TUPLES_OK, PGRES_SINGLE_TUPLE,
                               PGRES_BAD_RESPONSE, PGRES_FATAL_ERROR)
from pgstream.row import RowView


# stream states
STREAM_IDLE = 0            # no result fetched yet
STREAM_AWAITING_FIRST = 1  # the first result is being fetched
STREAM_TUPLE = 2           # positioned on a tuple
STREAM_EXHAUSTED = 3       # all the rows of the query have been read
STREAM_COMMAND = 4         # the command returned no rows
STREAM_ERROR = -1          # the request failed

_stateNames = {
    STREAM_IDLE: "idle",
    STREAM_AWAITING_FIRST: "awaiting first",
    STREAM_TUPLE: "tuple",
    STREAM_EXHAUSTED: "exhausted",
    STREAM_COMMAND: "command",
    STREAM_ERROR: "error",
    }


class ResultStream(object):
    """The results of a request, delivered in single row mode.

    conn is an object implementing IConnection, with a request in
    progress.

    Only one result is held at a time: the current one is cleared
    before the next is fetched, so that a query of any size can be
    read with constant memory.

    If the rows are not read until the end, drain must be called before
    making a new request on the same connection. A stream that has read
    its last row, its command result or its error is already at the end
    of the request, and the connection is ready.

    When validate is false the type of the columns is not checked
    against the type requested by the accessors of the rows.
    drainLimit is the number of rows drain discards before cancelling
    the request.
    """

    debug = False

    def __init__(self, conn, validate=True, drainLimit=0):
        self.conn = conn
        self.validate = validate
        self.drainLimit = drainLimit

        self.state = STREAM_IDLE
        self.num = 0 # row counter

        self._current = None # current result
        self._next = None # result read ahead of the current one
        self._row = None
        self._done = False # the request has no more results

    def __repr__(self):
        return "<ResultStream %s, row %d>" % (
            _stateNames.get(self.state, self.state), self.num)

    @property
    def status(self):
        """The status of the current result, or None.
        """

        if self._current is None:
            return None
        return self._current.status

    @property
    def row(self):
        """The current row, as a RowView.
        """

        if self.state != STREAM_TUPLE:
            raise NoActiveRow("the stream is not positioned on a row")

        if self._row is None or self._row.num != self.num:
            self._row = RowView(self)
        return self._row

    def tuple(self, num):
        """Return the current result, that must be the tuple of row
        num.
        """

        if self.state != STREAM_TUPLE or self._current is None:
            raise NoActiveRow("the stream is not positioned on a row")
        if num != self.num:
            raise NoActiveRow(
                "row %d is no more available, the stream is on row %d" % (
                    num, self.num)
                )

        return self._current

    def __iter__(self):
        if self.state == STREAM_IDLE and not self._done:
            self.first()

        while self.state == STREAM_TUPLE:
            yield self.row
            self.advance()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, tb):
        if excType is None:
            self.drain()
            return

        # do not hide the original exception
        try:
            self.drain()
        except Error:
            log.err(None, "error draining the result stream")

    #
    # Fetching
    #
    def _release(self):
        if self._current is not None:
            self._current.clear()
            self._current = None

    def _getResult(self):
        self._release()

        if self._next is not None:
            result, self._next = self._next, None
        else:
            result = self.conn.getResult()
        if result is None:
            self._done = True
        elif self.debug:
            log.msg("result received:", result.status)

        return result

    def _settle(self):
        # The end of the request follows the completion of its last
        # command, read it now so that the connection is ready for a
        # new request as soon as the stream is exhausted.
        # The current result is kept, for affectedRowCount.
        result = self.conn.getResult()
        if result is None:
            self._done = True
        else:
            # a following statement of a multi statement request
            self._next = result

    def _executionFailed(self, result):
        fields = result.error or {}
        message = fields.get(PG_DIAG_MESSAGE_PRIMARY) or \
            self.conn.errorMessage()
        return ExecutionFailed(message, fields)

    def _fetch(self):
        if self._done:
            self.state = STREAM_ERROR
            raise ProtocolDesync("the request has no more results")

        result = self._getResult()
        if result is None:
            self.state = STREAM_ERROR
            raise ProtocolDesync("the request ended without a command result")

        self._current = result
        status = result.status
        if status == PGRES_SINGLE_TUPLE:
            if result.ntuples != 1:
                self.state = STREAM_ERROR
                raise ProtocolDesync(
                    "single tuple result with %d tuples" % result.ntuples
                    )

            self.num += 1
            self.state = STREAM_TUPLE
        elif status == PGRES_TUPLES_OK:
            # After the last row, or when the query returns no row, a
            # zero-row result is returned; this is the signal that no
            # more rows are expected.
            if result.ntuples != 0:
                self.state = STREAM_ERROR
                raise ProtocolDesync(
                    "the result was not delivered in single row mode"
                    )

            self.state = STREAM_EXHAUSTED
            self._settle()
        elif status == PGRES_COMMAND_OK:
            self.state = STREAM_COMMAND
            self._settle()
        elif status == PGRES_EMPTY_QUERY:
            self.state = STREAM_EXHAUSTED
            self._settle()
        elif status in (PGRES_BAD_RESPONSE, PGRES_FATAL_ERROR):
            self.state = STREAM_ERROR
            error = self._executionFailed(result)
            self._settle()
            raise error
        else:
            self.state = STREAM_ERROR
            raise ProtocolDesync("unexpected result status %d" % status)

    def first(self):
        """Fetch the first result of the request.

        Return True if the stream is positioned on a row.
        """

        if self.state != STREAM_IDLE or self._done:
            raise UsageError("the first result has already been fetched")

        self.state = STREAM_AWAITING_FIRST
        self.num = 0
        self._fetch()

        return self.state == STREAM_TUPLE

    def advance(self):
        """Fetch the next row.

        Return True if the stream is positioned on a row.
        Once the rows are exhausted, this does nothing.
        """

        if self.state == STREAM_IDLE:
            raise UsageError("first must be called before advance")
        if self.state != STREAM_TUPLE:
            return False

        self._fetch()
        return self.state == STREAM_TUPLE

    next = advance

    def affectedRowCount(self):
        """Return the number of rows affected by the SQL command.
        """

        if self.state not in (STREAM_COMMAND, STREAM_EXHAUSTED) or \
                self._current is None:
            raise UsageError("the command has not completed")

        return int(self._current.cmdTuples or "0")

    #
    # Draining
    #
    def _isCancel(self, error, cancelled):
        return cancelled and \
            error.errorField(PG_DIAG_SQLSTATE) == QUERY_CANCELED

    def drain(self):
        """Discard all the results of the request not yet read, so that
        the connection can be used for a new request.

        If the rows keep coming, the request is cancelled.
        The first error found is raised, after the connection has been
        resynchronized.
        """

        error = None
        cancelled = False

        if self.state == STREAM_IDLE and not self._done:
            # no result has been read yet
            try:
                self.first()
            except ExecutionFailed as e:
                error = e
            except ProtocolDesync as e:
                error = e

        if self.state == STREAM_TUPLE:
            discarded = 0
            while self.state == STREAM_TUPLE:
                try:
                    self._fetch()
                except ExecutionFailed as e:
                    if self._isCancel(e, cancelled):
                        log.msg("request cancelled after row", self.num)
                    else:
                        error = e
                    break
                except ProtocolDesync as e:
                    if error is None:
                        error = e
                    break

                if self.state == STREAM_TUPLE:
                    discarded += 1
                    if not cancelled and discarded > self.drainLimit:
                        # All results of the query have not been
                        # processed, we need to cancel it.
                        log.msg("cancelling request at row", self.num)
                        self.conn.cancel()
                        cancelled = True

        while not self._done:
            result = self._getResult()
            if result is None:
                break

            self._current = result
            status = result.status
            if status in (PGRES_COMMAND_OK, PGRES_TUPLES_OK,
                          PGRES_EMPTY_QUERY):
                continue
            elif status in (PGRES_BAD_RESPONSE, PGRES_FATAL_ERROR):
                e = self._executionFailed(result)
                if self._isCancel(e, cancelled):
                    log.msg("request cancelled")
                elif error is None:
                    error = e
            elif status == PGRES_SINGLE_TUPLE:
                # rows of a following statement, that nobody will read
                if error is None:
                    log.msg("discarding rows of a following statement")
                    error = ProtocolDesync(
                        "a multi statement request returned rows that "
                        "were not read"
                        )
            else:
                log.msg("unexpected result status while draining:", status)
                if error is None:
                    error = ProtocolDesync(
                        "unexpected result status %d while draining" % status
                        )

        self._release()
        self.state = STREAM_IDLE

        if error is not None:
            raise error

    clear = drain
    close = drain
