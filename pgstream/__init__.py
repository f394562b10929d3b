"""pgstream, streaming of binary PostgreSQL results, one row at a time.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""

from pgstream.error import (Error, PgError, ExecutionFailed, ProtocolDesync,
                            UsageError, DecodeError, TypeMismatch, Truncated,
                            UnsupportedDimensionality, NoActiveRow)
from pgstream.result import ResultStream
from pgstream.fe import PgConnectionOption, BlockingConnection, connect

__version__ = "0.2"
