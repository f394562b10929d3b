"""PostgreSQL High level frontend interface

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


import getpass
import os

from zope.interface import implementer

from twisted.python import log
from twisted.internet import defer, threads

from pgstream import ipg
from pgstream.protocol import PgFactory
from pgstream.result import ResultStream


# options with their default values
DEFAULTS = {
    "host": "localhost",
    "port": 5432,
    "user": None,
    "password": None,
    "database": None,
    "application_name": None,
    "timeout": 30,
    # result streams
    "validate": True,
    "drainLimit": 0,
    # flow control
    "highWater": 1000,
    "lowWater": 100,
    }

# environment variables, as used by libpq
ENVVARS = {
    "host": "PGHOST",
    "port": "PGPORT",
    "user": "PGUSER",
    "password": "PGPASSWORD",
    "database": "PGDATABASE",
    "application_name": "PGAPPNAME",
    "timeout": "PGCONNECT_TIMEOUT",
    "validate": "PGSTREAM_VALIDATE",
    "drainLimit": "PGSTREAM_DRAIN_LIMIT",
    }

_INTEGERS = ("port", "timeout", "drainLimit", "highWater", "lowWater")

# parameters sent in the startup message
_STARTUP = ("user", "database", "application_name")


def _bool(value):
    if isinstance(value, str):
        return value.strip().lower() not in ("0", "false", "no", "off", "")
    return bool(value)


class PgConnectionOption(object):
    """Class for storing connection options.

    Options given as keywords take precedence over the environment
    variables, that take precedence over the defaults.
    """

    def __init__(self, environ=None, **kwargs):
        unknown = set(kwargs) - set(DEFAULTS)
        if unknown:
            raise TypeError("unknown options: %s" % ", ".join(sorted(unknown)))

        if environ is None:
            environ = os.environ

        self.keywords = kwargs
        self.envvars = {}
        for key, var in ENVVARS.items():
            if var in environ:
                self.envvars[key] = environ[var]

        self.options = {}

    def compile(self):
        """Return a dictionary with the value of all the options.
        """

        options = dict(DEFAULTS)
        options.update(self.envvars)
        options.update(self.keywords)

        for key in _INTEGERS:
            options[key] = int(options[key])
        options["validate"] = _bool(options["validate"])

        if not options["user"]:
            options["user"] = getpass.getuser()
        if not options["database"]:
            options["database"] = options["user"]

        if options["lowWater"] > options["highWater"]:
            raise ValueError("lowWater must not be greater than highWater")

        self.options = options
        return options

    def startupParameters(self):
        """Return the parameters for the login of the protocol.
        """

        options = self.options or self.compile()

        params = dict((key, options[key]) for key in _STARTUP
                      if options[key] is not None)
        if options["password"] is not None:
            params["password"] = options["password"]

        return params


class ConnectFactory(PgFactory):
    """A factory that logins as soon as the connection is made.
    """

    def __init__(self, option):
        options = option.compile()
        PgFactory.__init__(self, options["highWater"], options["lowWater"])

        self.parameters = option.startupParameters()
        self.deferred = defer.Deferred()

    def clientConnectionMade(self, protocol):
        d = protocol.login(**self.parameters)
        d.addCallback(lambda _: protocol)
        d.chainDeferred(self.deferred)

    def clientConnectionFailed(self, connector, reason):
        self.deferred.errback(reason)


def connect(option=None, reactor=None, **kwargs):
    """Connect to a PostgreSQL database, and login.

    Return a deferred firing with the PgProtocol instance.

    host can be a TCP address or the directory of a Unix domain socket,
    as with libpq.
    """

    if option is None:
        option = PgConnectionOption(**kwargs)
    if reactor is None:
        from twisted.internet import reactor

    options = option.compile()
    factory = ConnectFactory(option)

    host, port = options["host"], options["port"]
    if host.startswith("/"):
        path = os.path.join(host, ".s.PGSQL.%d" % port)
        reactor.connectUNIX(path, factory, options["timeout"])
    else:
        reactor.connectTCP(host, port, factory, options["timeout"])

    return factory.deferred


@implementer(ipg.IConnection)
class BlockingConnection(object):
    """A synchronous interface to a PgProtocol.

    The reactor runs in another thread; all the methods block the
    calling thread until the reactor has done the work.
    """

    def __init__(self, protocol, reactor=None, validate=True, drainLimit=0):
        if reactor is None:
            from twisted.internet import reactor

        self.protocol = protocol
        self.reactor = reactor
        self.validate = validate
        self.drainLimit = drainLimit

    @classmethod
    def open(cls, option=None, reactor=None, **kwargs):
        """Connect to the database, and return a BlockingConnection.
        """

        if option is None:
            option = PgConnectionOption(**kwargs)
        if reactor is None:
            from twisted.internet import reactor

        options = option.compile()
        protocol = threads.blockingCallFromThread(reactor, connect,
                                                  option, reactor)

        return cls(protocol, reactor, options["validate"],
                   options["drainLimit"])

    def _call(self, f, *args):
        return threads.blockingCallFromThread(self.reactor, f, *args)

    def _send(self, method, *args):
        # runs in the reactor thread; we do not wait for the request to
        # complete, the results are read with getResult
        d = method(*args)
        d.addErrback(log.err, "request failed")

    def execute(self, query, *args):
        """Execute a query, with binary results.

        Return a ResultStream.
        """

        self._call(self._send, self.protocol.execute, query, *args)
        return ResultStream(self, self.validate, self.drainLimit)

    def executeScript(self, query):
        """Execute one or more commands, with text results.

        Return a ResultStream.
        """

        self._call(self._send, self.protocol.executeScript, query)
        return ResultStream(self, self.validate, self.drainLimit)

    def getResult(self):
        return self._call(self.protocol.getResult)

    def cancel(self):
        log.msg("cancel request for backend", self.protocol.backendPID)
        return self._call(lambda: self.protocol.getCancel().cancel())

    def errorMessage(self):
        return self.protocol.errorMessage()

    def close(self):
        self._call(self.protocol.finish)

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, tb):
        self.close()
