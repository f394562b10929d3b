"""PostgreSQL Protocol implementation

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


import hashlib
from struct import pack, unpack, unpack_from

from zope.interface import implementer
from scramp import ScramClient, ScramException

from twisted.python import log
from twisted.internet import protocol, defer
from twisted.internet.address import IPv4Address, IPv6Address, UNIXAddress

from pgstream import ipg
from pgstream.error import (PgError, InvalidRequest, AuthenticationError,
                            UnsupportedError)


# protocol version
PG_PROTO_VERSION = (3 << 16) | 0

# cancel request code
PG_CANCEL_CODE = (1234 << 16) | 5678

# messages header size
PG_HEADER_SIZE = 5 # 1 byte opcode + 4 byte length

# connection status
CONNECTION_STARTED = 0           # waiting for connection to be made
CONNECTION_MADE = 1              # connection ok; waiting to send
CONNECTION_AWAITING_RESPONSE = 2 # waiting for a response from the
                                 # server
CONNECTION_AUTH_OK = 3           # received authentication; waiting for
                                 # backend start-up finish
CONNECTION_OK = 6                # connection ok; backend ready
CONNECTION_BAD = -1              # connection procedure failed

# transaction status
PGTRANS_IDLE = "I"     # currently idle
PGTRANS_INTRANS = "T"  # idle, in a valid transaction block
PGTRANS_INERROR = "E"  # idle, in a failed transaction block
PGTRANS_ACTIVE = "A"   # a command is in progress (used only in the frontend)
PGTRANS_UNKNOWN = -1   # the connection is bad

# result status
PGRES_EMPTY_QUERY = 0      # the string sent to the server was empty
PGRES_COMMAND_OK = 1       # successful completion of a command
                           # returning no data
PGRES_TUPLES_OK = 2        # successful completion of a command
                           # returning data (such as SELECT or SHOW)
PGRES_COPY_OUT = 3         # Copy Out (from server) data transfer started
PGRES_COPY_IN = 4          # Copy In (to server) data transfer started
PGRES_SINGLE_TUPLE = 9     # a single tuple of a command returning data
PGRES_BAD_RESPONSE = -1    # the server response was not understood
PGRES_NONFATAL_ERROR = -2  # a non fatal error (a notice or warning)
                           # occurred
PGRES_FATAL_ERROR = -3     # a fatal error occurred

# format codes
FORMAT_TEXT = 0
FORMAT_BINARY = 1

# commands whose tag carries the number of rows
_ROWS_COMMANDS = ("INSERT", "UPDATE", "DELETE", "SELECT", "MOVE", "FETCH",
                  "COPY", "MERGE")


def _parseFields(data):
    # parse the fields of an ErrorResponse or NoticeResponse
    fields = {}
    for item in data.split(b"\0")[:-2]:
        key, val = item[:1], item[1:]
        fields[key.decode("ascii")] = val.decode("utf-8", "replace")

    return fields

def _cstring(s):
    return s.encode("utf-8") + b"\0"

def _encodeParameter(value):
    # parameters are always sent in text format
    if value is None:
        return pack("!i", -1)
    if isinstance(value, bool):
        value = value and "t" or "f"
    if not isinstance(value, bytes):
        value = str(value).encode("utf-8")

    return pack("!i", len(value)) + value


class PgCancel(object):
    """A proxy object for sending cancel requests to a PostgreSQL
    backend.
    """

    def __init__(self, addr, backendPID, cancelKey):
        self.addr = addr
        self.backendPID = backendPID
        self.cancelKey = cancelKey

    def cancel(self, timeout=30):
        """Send a cancel request to the backend.

        Return a deferred.
        """

        from twisted.internet import reactor


        factory = CancelFactory(self.backendPID, self.cancelKey)

        if isinstance(self.addr, (IPv4Address, IPv6Address)):
            reactor.connectTCP(self.addr.host, self.addr.port,
                               factory, timeout)
        elif isinstance(self.addr, UNIXAddress):
            reactor.connectUNIX(self.addr.name, factory, timeout)
        else:
            return defer.fail(RuntimeError("invalid address"))

        # returns only when the request has been received by the backend
        return factory.deferred


class PgRequest(object):
    """A wrapper for a request to the backend.

    A request is made of one or more messages, all sent together.
    """

    def __init__(self, opcode, payload, followers=()):
        self.opcode = opcode
        self.payload = payload
        self.followers = list(followers)

        self.deferred = defer.Deferred()



@implementer(ipg.IRowDescription)
class RowDescription(object):
    def __init__(self, fname, ftable, ftablecol, ftype, fsize, fmod,
                 fformat):
        self.fname = fname
        self.ftable = ftable
        self.ftablecol = ftablecol
        self.ftype = ftype
        self.fsize = fsize
        self.fmod = fmod
        self.fformat = fformat

    def __repr__(self):
        return "<RowDescription %s oid=%d format=%d>" % (
            self.fname, self.ftype, self.fformat)


@implementer(ipg.IResult)
class Result(object):
    status = PGRES_EMPTY_QUERY # convenient default

    cmdStatus = None
    cmdTuples = ""
    oidValue = 0

    def __init__(self, status=PGRES_EMPTY_QUERY, descriptions=None,
                 rows=None, error=None):
        self.status = status
        self.descriptions = descriptions or []
        self.rows = rows or []
        self.error = error or {}

    @property
    def ntuples(self):
        return len(self.rows)

    @property
    def nfields(self):
        return len(self.descriptions)

    def clear(self):
        self.rows = []

    def __repr__(self):
        return "<Result status=%d ntuples=%d>" % (self.status, self.ntuples)


@implementer(ipg.IRowConsumer)
class RowConsumer(object):
    """Build results in single row mode: one result for each row, and
    one for the end of each command.
    """

    def __init__(self):
        self.descriptions = []

    def description(self, data):
        # parse the data
        (nfields,) = unpack("!H", data[:2])

        descriptions = []
        pos = 2
        for i in range(nfields):
            idx = data.index(b"\0", pos)
            fname = data[pos:idx].decode("utf-8")
            pos = idx + 19 # leading null plus 18 of int

            (
                ftable, ftablecol, ftype, fsize, fmod, fformat
                ) = unpack_from("!IhIhih", data, idx + 1)

            desc = RowDescription(fname, ftable, ftablecol, ftype,
                                  fsize, fmod, fformat)
            descriptions.append(desc)

        self.descriptions = descriptions

    def row(self, data):
        # parse the data
        (nfields,) = unpack("!H", data[:2])

        row = []
        pos = 2
        for i in range(nfields):
            (length,) = unpack_from("!i", data, pos)
            pos += 4
            if length == -1:
                # a NULL value
                row.append(None)
            else:
                row.append(bytes(data[pos:pos + length]))
                pos += length

        return Result(PGRES_SINGLE_TUPLE, self.descriptions, [row])

    def complete(self, status, oid, rows):
        if self.descriptions:
            result = Result(PGRES_TUPLES_OK, self.descriptions)
        else:
            result = Result(PGRES_COMMAND_OK)

        result.cmdStatus = status
        result.cmdTuples = rows
        result.oidValue = oid

        # prepare the next command
        self.descriptions = []

        return result

    def empty(self):
        self.descriptions = []
        return Result(PGRES_EMPTY_QUERY)

    def error(self, fields):
        self.descriptions = []
        return Result(PGRES_FATAL_ERROR, error=fields)


@implementer(ipg.IHandler)
class Handler(object):
    def notice(self, notice):
        log.msg("Notice:", str(notice))



class PgProtocol(protocol.Protocol):
    """The PostgreSQL protocol implementation, frontend side,
    version 3.0.

    PostgreSQL support multiple request, but we choose to send only
    one request at time, since life is much easier.

    The results of a request are delivered in single row mode: each
    row in its own result, followed by a result for the completion of
    the command, for each command of the request.  After the last
    result, None is delivered.
    Results are retrieved, in order, with getResult.

    When highWater results are waiting to be retrieved, the transport
    is paused; it is resumed when no more than lowWater are left.

    Whenever possible, we try to follow the interface of libpq.
    """

    debug = False

    status = CONNECTION_STARTED
    transactionStatus = PGTRANS_IDLE

    lastNotice = {}
    lastError = {}

    protocolVersion = 3 # we support only this
    serverVersion = None
    backendPID = None


    def __init__(self, addr, handler=None, rowConsumer=None,
                 highWater=1000, lowWater=100):
        """Address is a IAddress address, handler is a IHandler object,
        rowConsumer is a IRowConsumer object.
        """

        self.addr = addr # used by cancel
        self.handler = handler or Handler()
        self.rowConsumer = rowConsumer or RowConsumer()

        self.highWater = highWater
        self.lowWater = lowWater

        # cancellation key used for cancel a query in progress
        self.cancelKey = None

        self.parameterStatus = {}
        self.results = defer.DeferredQueue()

        self._queue = [] # we queue requests to the backend
        self._last = None # last request we made
        self._paused = False

        self._buffer = bytearray()

    def connectionMade(self):
        self.status = CONNECTION_MADE
        self.transactionStatus = PGTRANS_UNKNOWN

        self.factory.clientConnectionMade(self)

    def connectionLost(self, reason=protocol.connectionDone):
        self.status = CONNECTION_BAD
        self.transactionStatus = PGTRANS_UNKNOWN

        if self._last is None:
            return

        # do not leave a reader waiting forever
        request, self._last = self._last, None
        if request.opcode is None:
            request.deferred.errback(reason)
        else:
            error = {"S": "FATAL", "M": "connection lost"}
            self._put(self.rowConsumer.error(error))
            self._put(None)
            request.deferred.errback(reason)

        for request in self._queue:
            request.deferred.errback(reason)
        self._queue = []

    def dataReceived(self, data):
        """Handle raw data arrived from postgres backend.
        """

        self._buffer += data

        while len(self._buffer) >= PG_HEADER_SIZE:
            # read the message header
            opcode, size = unpack("!cI",
                                  self._buffer[:PG_HEADER_SIZE])

            size = size - 4 # the length count includes itself
            if len(self._buffer) < size + PG_HEADER_SIZE:
                break

            payload = bytes(self._buffer[PG_HEADER_SIZE:size + PG_HEADER_SIZE])
            del self._buffer[:size + PG_HEADER_SIZE]

            self.messageReceived(opcode, payload)

    def sendMessage(self, request):
        """Send the given message to the backend.
        """

        self._queue.append(request)
        self._flush()

        return request.deferred

    def _flush(self):
        # send the next queued request
        if self._queue and self._last is None:
            request = self._queue.pop(0)

            self._last = request
            self.transactionStatus = PGTRANS_ACTIVE
            self.lastError = {}

            self._sendMessage(request.opcode, request.payload)
            for opcode, payload in request.followers:
                self._sendMessage(opcode, payload)

    def _sendMessage(self, opcode, payload):
        # internal helper

        header = pack("!cI", opcode, len(payload) + 4)
        self.transport.write(header + payload)

        if self.debug:
            log.msg("request sent:", opcode)

    def messageReceived(self, opcode, payload):
        """Handle the message.
        """

        if self.debug:
            log.msg("message received:", opcode)

        # dispatch the message using python introspection
        method = getattr(self, "message_" + opcode.decode("latin-1"), None)

        if method is None:
            error = InvalidRequest(opcode)

            if self._last is not None:
                request, self._last = self._last, None
                request.deferred.errback(error)
            else:
                log.err(error)

            # we close the connection, as suggested in the protocol
            # specification
            self.transport.loseConnection()
            return

        method(payload)

    #
    # Results
    #
    def _put(self, result):
        self.results.put(result)

        if not self._paused and len(self.results.pending) >= self.highWater:
            self._paused = True
            self.transport.pauseProducing()

    def getResult(self):
        """Return a deferred firing with the next result of the
        current request, or with None when there are no more results.
        """

        d = self.results.get()

        if self._paused and len(self.results.pending) <= self.lowWater:
            self._paused = False
            self.transport.resumeProducing()

        return d


    #
    # backend messages handling
    #
    # Start-Up
    #
    def message_E(self, data):
        """ErrorResponse: an error occurred.

        For error message types see protocol documentation.
        """

        error = _parseFields(data)

        self.lastError = error
        log.msg("ERROR:", str(error))

        # check if we failed the authentication
        if self._last is None or self._last.opcode is None:
            request, self._last = self._last, None
            if request is not None:
                request.deferred.errback(PgError(error))
            self.transport.loseConnection()
            return

        self._put(self.rowConsumer.error(error))

    def message_N(self, data):
        """NoticeResponse: a notice from the backend.

        For warning message types see protocol documentation.
        """

        notice = _parseFields(data)

        self.handler.notice(notice)

        # we store only the last notice
        self.lastNotice = notice

    def message_R(self, data):
        """Authentication: authentication request.
        """

        (authtype,) = unpack("!I", data[:4])

        method = getattr(self, "_auth_%s" % authtype, None)
        if not method:
            self._authFailed(UnsupportedError("Authentication", authtype))
            return

        self.status = CONNECTION_AWAITING_RESPONSE

        method(data[4:])

    def _authFailed(self, error):
        request, self._last = self._last, None
        request.deferred.errback(error)

        self.transport.loseConnection()

    def _auth_0(self, data=None):
        """AuthenticationOK: we are authenticated.
        """

        self.status = CONNECTION_AUTH_OK

        # these are no more needed
        self._user = self._password = None

    def _auth_3(self, data=None):
        """AuthenticationCleartextPassword: cleartext password is
        required.
        """

        log.msg("auth pass")

        if self._password is None:
            self._authFailed(AuthenticationError("password is required"))
            return

        self.passwordMessage(self._password.encode("utf-8"))

    def _auth_5(self, salt):
        """AuthenticationMD5Password: an MD5-encrypted password is
        required.

        md5hex(md5hex(password + user) + salt)
        """

        log.msg("auth md5")

        if self._password is None:
            self._authFailed(AuthenticationError("password is required"))
            return

        secret = (self._password + self._user).encode("utf-8")
        hash = hashlib.md5(secret).hexdigest().encode("ascii")
        password = b"md5" + hashlib.md5(hash + salt).hexdigest().encode("ascii")

        self.passwordMessage(password)

    def _auth_10(self, data):
        """AuthenticationSASL: SASL authentication is required.

        We only support SCRAM-SHA-256, without channel binding.
        """

        log.msg("auth sasl")

        mechanisms = [m.decode("ascii") for m in data.split(b"\0") if m]
        if "SCRAM-SHA-256" not in mechanisms:
            self._authFailed(UnsupportedError("SASL", mechanisms))
            return
        if self._password is None:
            self._authFailed(AuthenticationError("password is required"))
            return

        self._scram = ScramClient(["SCRAM-SHA-256"], self._user,
                                  self._password)

        response = self._scram.get_client_first().encode("utf-8")
        payload = _cstring(self._scram.mechanism_name) + \
            pack("!i", len(response)) + response
        self._sendMessage(b"p", payload)

    def _auth_11(self, data):
        """AuthenticationSASLContinue: the server first message.
        """

        try:
            self._scram.set_server_first(data.decode("utf-8"))
        except ScramException as e:
            self._authFailed(AuthenticationError(str(e)))
            return

        response = self._scram.get_client_final().encode("utf-8")
        self._sendMessage(b"p", response)

    def _auth_12(self, data):
        """AuthenticationSASLFinal: the server signature.
        """

        try:
            self._scram.set_server_final(data.decode("utf-8"))
        except ScramException as e:
            self._authFailed(AuthenticationError(str(e)))
            return

        self._scram = None

    def message_K(self, data):
        """BackendKeyData: the backend process id and secret key.
        """

        self.backendPID, self.cancelKey = unpack("!II", data)

    def message_S(self, data):
        """ParameterStatus: backend runtime parameter.
        """

        key, val, _ = data.decode("utf-8").split("\0")
        self.parameterStatus[key] = val

    def message_Z(self, transactionStatus):
        """ReadyForQuery: the backend is ready for a new query cycle.
        """

        self.transactionStatus = transactionStatus.decode("ascii")

        if self._last is None:
            return

        deferred = self._last.deferred
        opcode = self._last.opcode
        self._last = None

        if opcode is None:
            self.lastError = {}
            self.status = CONNECTION_OK

            # compute the server version, as required by the libpq
            # interface
            version = self.parameterStatus.get("server_version", "")
            self.serverVersion = _serverVersion(version)

            deferred.callback(self.parameterStatus)
        else:
            # no more results for this request
            self._put(None)
            deferred.callback(self.transactionStatus)

        # send the next request
        self._flush()

    #
    # Query
    #
    def message_C(self, tag):
        """CommandComplete: an SQL command completed normally.

        Note that a simple query can contain more than one command.
        """

        # parse the tag
        tags = tag.rstrip(b"\0").decode("utf-8").split(" ")

        cmdStatus = tags[0]
        oid = 0
        rows = ""
        if cmdStatus in _ROWS_COMMANDS and len(tags) > 1:
            rows = tags[-1]
        if cmdStatus == "INSERT" and len(tags) == 3:
            oid = int(tags[1])

        self._put(self.rowConsumer.complete(cmdStatus, oid, rows))

    def message_T(self, data):
        """RowDescription: a description of row fields.
        """

        self.rowConsumer.description(data)

    def message_D(self, data):
        """DataRow: a row from the result.
        """

        result = self.rowConsumer.row(data)
        if result is not None:
            self._put(result)

    def message_I(self, data):
        """EmptyQueryResponse: an empty query string was recognized.
        """

        self._put(self.rowConsumer.empty())

    def message_1(self, data):
        """ParseComplete.
        """

    def message_2(self, data):
        """BindComplete.
        """

    def message_n(self, data):
        """NoData: the statement returns no rows.
        """

    #
    # COPY Operations, not supported: the transfer is aborted or
    # discarded, and the reader gets a result with a COPY status
    #
    def message_G(self, data):
        """CopyInResponse: the frontend must now send copy data.
        """

        self._put(Result(PGRES_COPY_IN))
        self.copyFail("COPY FROM STDIN is not supported")

    def message_H(self, data):
        """CopyOutResponse: the frontend must now receive copy data.
        """

        self._put(Result(PGRES_COPY_OUT))

    def message_d(self, data):
        """CopyData: discarded.
        """

    def message_c(self, data):
        """CopyDone: COPY transfer complete.
        """

    def message_A(self, data):
        """NotificationResponse: notifications are not supported, and
        ignored.
        """

        if self.debug:
            log.msg("notification ignored")


    #
    # frontend messages handling
    #
    def login(self, **kwargs):
        """StartupMessage: login to the PostgreSQL database

        The only required option is user.
        Optional parameters is database; defaults to user name.

        In addition any run-time parameters that can be set at backend
        start time may be listed.
        """

        parameters = kwargs.copy()

        self._user = parameters.get("user", None)
        self._password = parameters.pop("password", None)

        if self._user is None:
            return defer.fail(AuthenticationError("user is required"))

        options = b"".join(
            _cstring(key) + _cstring(str(val))
            for key, val in parameters.items() if val is not None
            ) + b"\0"

        size = len(options)
        payload = pack("!II", size + 8, PG_PROTO_VERSION) + options

        # the StartupMessage does not require the message type
        self.transport.write(payload)

        self._last = PgRequest(None, payload)
        self.status = CONNECTION_AWAITING_RESPONSE

        return self._last.deferred

    def passwordMessage(self, password):
        """PasswordMessage: send a password response.

        internal method.
        """

        self._sendMessage(b"p", password + b"\0")

    def execute(self, query, *args):
        """Execute a query with the extended query protocol.

        args are the query parameters ($1, $2, ...), sent in text
        format; all the columns of the result are in binary format.

        Return a deferred firing when the request is complete; the
        results are retrieved with getResult.
        """

        parse = b"\0" + _cstring(query) + pack("!H", 0)

        bind = [b"\0\0", pack("!HH", 0, len(args))]
        for arg in args:
            bind.append(_encodeParameter(arg))
        bind.append(pack("!HH", 1, FORMAT_BINARY))

        request = PgRequest(b"P", parse, [
                (b"B", b"".join(bind)),
                (b"D", b"P\0"),
                (b"E", b"\0" + pack("!i", 0)),
                (b"S", b""),
                ])

        return self.sendMessage(request)

    def executeScript(self, query):
        """Query: execute a simple query.

        The query can contain more than one command; the columns of
        the results are in text format.
        """

        request = PgRequest(b"Q", _cstring(query))
        return self.sendMessage(request)

    def copyFail(self, error):
        """CopyFail: COPY transfer failed.

        internal method
        """

        self._sendMessage(b"f", _cstring(error))

    def getCancel(self):
        """Request a cancellation object for this connection.
        """

        return PgCancel(self.addr, self.backendPID, self.cancelKey)

    def cancel(self, backendPID, cancelKey):
        """CancelRequest: request a cancellation for the current
        query.

        internal method
        """

        payload = pack("!IIII", 16, PG_CANCEL_CODE, backendPID, cancelKey)

        # the CancelRequest does not require the message type
        self.transport.write(payload)

    def finish(self):
        """Terminate: issue a disconnection packet and disconnect.
        """

        self._sendMessage(b"X", b"")

        self.transport.loseConnection()


    #
    # Helper methods
    #
    def errorMessage(self):
        """Return the error message associated with the last command,
        or an empty string if there was no error.
        """

        return self.lastError.get("M", "")


def _serverVersion(version):
    # "9.6.24", "16.2", "16beta1", "15.4 (Debian 15.4-1)"
    digits = []
    for part in version.split(" ")[0].split("."):
        num = ""
        for c in part:
            if not c.isdigit():
                break
            num += c
        digits.append(int(num or 0))

    if not digits:
        return 0

    major = digits[0]
    if major >= 10:
        minor = digits[1] if len(digits) > 1 else 0
        return major * 10000 + minor

    digits = (digits + [0, 0])[:3]
    return digits[0] * 10000 + digits[1] * 100 + digits[2]


class PgFactory(protocol.ClientFactory):
    """A simple factory that manages PgProtocol.
    """

    def __init__(self, highWater=1000, lowWater=100):
        self.highWater = highWater
        self.lowWater = lowWater

    def buildProtocol(self, addr):
        protocol = PgProtocol(addr, highWater=self.highWater,
                              lowWater=self.lowWater)
        protocol.factory = self
        return protocol

    def clientConnectionMade(self, protocol):
        pass


class CancelFactory(PgFactory):
    """A custom factory for cancel requests.
    """

    def __init__(self, backendPID, cancelKey):
        PgFactory.__init__(self)

        self.backendPID = backendPID
        self.cancelKey = cancelKey

        self.deferred = defer.Deferred()

    def clientConnectionMade(self, protocol):
        protocol.cancel(self.backendPID, self.cancelKey)
        protocol.transport.loseConnection()

    def clientConnectionLost(self, connector, reason):
        self.deferred.callback(None)

    def clientConnectionFailed(self, connector, reason):
        self.deferred.errback(reason)
