"""Test suite for the streaming of results

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from twisted.trial import unittest

from pgstream import pgtype
from pgstream.error import (ExecutionFailed, NoActiveRow, ProtocolDesync,
                            UsageError)
from pgstream.protocol import (Result, PGRES_COPY_OUT, PGRES_EMPTY_QUERY,
                               PGRES_FATAL_ERROR, PGRES_SINGLE_TUPLE,
                               PGRES_TUPLES_OK)
from pgstream.result import (ResultStream, STREAM_IDLE, STREAM_TUPLE,
                             STREAM_EXHAUSTED, STREAM_COMMAND, STREAM_ERROR)
from pgstream.testing import (ScriptedConnection, column, commandOk, encode,
                              errorResult, selectResults, tupleResult)



def intRows(values):
    return [[encode(pgtype.INT4, v)] for v in values]


class TestStream(unittest.TestCase):
    def setUp(self):
        self.descriptions = [column("n", pgtype.INT4OID)]
        self.conn = ScriptedConnection()

    def select(self, values):
        self.conn.add(selectResults(self.descriptions, intRows(values)))
        return ResultStream(self.conn)

    def testRows(self):
        stream = self.select([10, 20, 30])

        values = []
        ok = stream.first()
        while ok:
            values.append(stream.row.get(0, pgtype.INT4))
            ok = stream.advance()

        self.assertEqual(values, [10, 20, 30])
        self.assertEqual(stream.state, STREAM_EXHAUSTED)
        self.assertEqual(stream.affectedRowCount(), 3)

        stream.drain()
        self.assertEqual(self.conn.pending(), 0)

    def testIteration(self):
        stream = self.select([10, 20, 30])

        values = [row.get(0, pgtype.INT4) for row in stream]

        self.assertEqual(values, [10, 20, 30])
        self.assertEqual(stream.affectedRowCount(), 3)

    def testNextRequestAfterRows(self):
        stream = self.select([10, 20, 30])
        self.assertEqual([row.get(0, pgtype.INT4) for row in stream],
                         [10, 20, 30])
        self.assertEqual(self.conn.pending(), 0)

        # no drain
        stream = self.select([40])
        self.assertEqual([row.get(0, pgtype.INT4) for row in stream], [40])
        self.assertEqual(self.conn.pending(), 0)

    def testNextRequestAfterCommand(self):
        self.conn.add([commandOk("UPDATE 5", 5), None])
        stream = ResultStream(self.conn)
        stream.first()
        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(stream.affectedRowCount(), 5)

        stream = self.select([1])
        self.assertTrue(stream.first())
        self.assertEqual(stream.row.get(0, pgtype.INT4), 1)

    def testNextRequestAfterError(self):
        self.conn.add([errorResult("syntax error", "42601"), None])
        stream = ResultStream(self.conn)
        self.assertRaises(ExecutionFailed, stream.first)

        stream = self.select([2])
        self.assertEqual([row.get(0, pgtype.INT4) for row in stream], [2])

    def testRowNumber(self):
        stream = self.select([1, 2])

        stream.first()
        self.assertEqual(stream.num, 1)
        stream.advance()
        self.assertEqual(stream.num, 2)

    def testNoRows(self):
        stream = self.select([])

        self.assertFalse(stream.first())
        self.assertEqual(stream.state, STREAM_EXHAUSTED)
        self.assertEqual(stream.affectedRowCount(), 0)
        self.assertRaises(NoActiveRow, lambda: stream.row)

    def testCommand(self):
        self.conn.add([commandOk("UPDATE 5", 5), None])
        stream = ResultStream(self.conn)

        self.assertFalse(stream.first())
        self.assertEqual(stream.state, STREAM_COMMAND)
        self.assertEqual(stream.affectedRowCount(), 5)

    def testCommandWithoutCount(self):
        self.conn.add([commandOk("CREATE TABLE"), None])
        stream = ResultStream(self.conn)
        stream.first()

        self.assertEqual(stream.affectedRowCount(), 0)

    def testEmptyQuery(self):
        self.conn.add([Result(PGRES_EMPTY_QUERY), None])
        stream = ResultStream(self.conn)

        self.assertFalse(stream.first())
        self.assertEqual(stream.state, STREAM_EXHAUSTED)
        self.assertEqual(stream.affectedRowCount(), 0)

    def testAdvanceIsIdempotent(self):
        stream = self.select([1])
        stream.first()
        self.assertFalse(stream.advance())

        fetched = self.conn.fetched
        self.assertFalse(stream.advance())
        self.assertFalse(stream.advance())
        self.assertEqual(self.conn.fetched, fetched)
        self.assertEqual(stream.state, STREAM_EXHAUSTED)

    def testUsage(self):
        stream = self.select([1, 2])

        self.assertRaises(UsageError, stream.advance)
        self.assertRaises(UsageError, stream.affectedRowCount)

        stream.first()
        self.assertRaises(UsageError, stream.first)
        self.assertRaises(UsageError, stream.affectedRowCount)

    def testFirstAfterDrain(self):
        stream = self.select([1, 2])
        stream.first()
        stream.drain()

        self.assertEqual(stream.state, STREAM_IDLE)
        self.assertRaises(UsageError, stream.first)

    def testRelease(self):
        stream = self.select([1, 2])

        stream.first()
        first = stream._current
        stream.advance()
        self.assertEqual(self.conn.cleared, [first])
        self.assertEqual(first.rows, [])

        stream.advance()
        stream.drain()
        self.assertEqual(len(self.conn.cleared), 3)


class TestFailure(unittest.TestCase):
    def setUp(self):
        self.descriptions = [column("n", pgtype.INT4OID)]
        self.conn = ScriptedConnection()

    def testExecutionFailed(self):
        self.conn.add([errorResult('column "x" does not exist'), None])
        stream = ResultStream(self.conn)

        error = self.assertRaises(ExecutionFailed, stream.first)
        self.assertEqual(str(error), 'column "x" does not exist')
        self.assertEqual(error.errorField("C"), "42703")
        self.assertEqual(stream.state, STREAM_ERROR)

        # the end of the request has been consumed with the error
        self.assertEqual(self.conn.pending(), 0)
        stream.drain()
        self.assertEqual(stream.state, STREAM_IDLE)

    def testErrorMessageFallback(self):
        self.conn.lastError = "server closed the connection"
        self.conn.add([Result(PGRES_FATAL_ERROR, error={}), None])
        stream = ResultStream(self.conn)

        error = self.assertRaises(ExecutionFailed, stream.first)
        self.assertEqual(error.message, "server closed the connection")

    def testErrorAfterRows(self):
        results = [tupleResult(self.descriptions, intRows([1])[0]),
                   errorResult("division by zero", "22012"),
                   None]
        self.conn.add(results)
        stream = ResultStream(self.conn)

        self.assertTrue(stream.first())
        self.assertRaises(ExecutionFailed, stream.advance)
        self.assertRaises(NoActiveRow, lambda: stream.row)

    def testDrainReportsError(self):
        self.conn.add([errorResult("syntax error", "42601"), None])
        stream = ResultStream(self.conn)

        error = self.assertRaises(ExecutionFailed, stream.drain)
        self.assertEqual(error.errorField("C"), "42601")
        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(stream.state, STREAM_IDLE)

    def testEndWithoutResult(self):
        self.conn.add([None])
        stream = ResultStream(self.conn)

        self.assertRaises(ProtocolDesync, stream.first)
        self.assertEqual(stream.state, STREAM_ERROR)

    def testNotSingleRowMode(self):
        result = Result(PGRES_TUPLES_OK, self.descriptions, intRows([1, 2]))
        self.conn.add([result, None])
        stream = ResultStream(self.conn)

        self.assertRaises(ProtocolDesync, stream.first)

    def testManyTuples(self):
        result = Result(PGRES_SINGLE_TUPLE, self.descriptions, intRows([1, 2]))
        self.conn.add([result, None])
        stream = ResultStream(self.conn)

        self.assertRaises(ProtocolDesync, stream.first)

    def testUnexpectedStatus(self):
        self.conn.add([Result(PGRES_COPY_OUT), None])
        stream = ResultStream(self.conn)

        self.assertRaises(ProtocolDesync, stream.first)
        # the connection can still be resynchronized
        stream.drain()
        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(stream.state, STREAM_IDLE)

    def testUnexpectedStatusWhileDraining(self):
        results = [commandOk("SET"), Result(PGRES_COPY_OUT),
                   errorResult("later error"), None]
        self.conn.add(results)
        stream = ResultStream(self.conn)
        stream.first()

        error = self.assertRaises(ProtocolDesync, stream.drain)
        self.assertIn("draining", str(error))
        self.assertEqual(self.conn.pending(), 0)


    def testDrainUnstartedCopy(self):
        self.conn.add([Result(PGRES_COPY_OUT), commandOk("COPY 3"), None])
        stream = ResultStream(self.conn)

        self.assertRaises(ProtocolDesync, stream.drain)
        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(stream.state, STREAM_IDLE)

    def testDesyncWhileDrainingRows(self):
        results = [tupleResult(self.descriptions, intRows([1])[0]),
                   Result(PGRES_SINGLE_TUPLE, self.descriptions,
                          intRows([2, 3]))]
        results.extend(selectResults(self.descriptions, intRows([4, 5])))
        self.conn.add(results)
        stream = ResultStream(self.conn)
        stream.first()

        error = self.assertRaises(ProtocolDesync, stream.drain)
        self.assertIn("2 tuples", str(error))
        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(stream.state, STREAM_IDLE)

        # the connection is usable again
        self.conn.add(selectResults(self.descriptions, intRows([6])))
        stream = ResultStream(self.conn)
        self.assertEqual([row.get(0, pgtype.INT4) for row in stream], [6])


class TestDrain(unittest.TestCase):
    def setUp(self):
        self.descriptions = [column("n", pgtype.INT4OID)]
        self.conn = ScriptedConnection()

    def select(self, values, **kw):
        self.conn.add(selectResults(self.descriptions, intRows(values)))
        return ResultStream(self.conn, **kw)

    def testAbandon(self):
        stream = self.select(range(100))
        stream.first()

        stream.drain()

        self.assertEqual(self.conn.cancelled, 1)
        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(stream.state, STREAM_IDLE)

        # the connection is usable again
        stream = self.select([7])
        self.assertEqual([row.get(0, pgtype.INT4) for row in stream], [7])

    def testDrainLimit(self):
        stream = self.select(range(10), drainLimit=20)
        stream.first()

        stream.drain()

        self.assertEqual(self.conn.cancelled, 0)
        self.assertEqual(self.conn.pending(), 0)

    def testDrainLimitExceeded(self):
        stream = self.select(range(100), drainLimit=5)
        stream.first()

        stream.drain()

        self.assertEqual(self.conn.cancelled, 1)
        # the first row, the discarded ones and the cancel error
        self.assertEqual(self.conn.fetched, 1 + 6 + 2)

    def testDrainUnstarted(self):
        stream = self.select([1, 2, 3], drainLimit=10)

        stream.drain()

        self.assertEqual(self.conn.pending(), 0)
        self.assertEqual(self.conn.cancelled, 0)

    def testDrainExhausted(self):
        stream = self.select([1])
        list(stream)

        stream.drain()
        stream.drain()

        self.assertEqual(self.conn.cancelled, 0)
        self.assertEqual(self.conn.pending(), 0)

    def testMultiStatement(self):
        self.conn.add([commandOk("BEGIN"),
                       commandOk("UPDATE 2", 2),
                       commandOk("COMMIT"),
                       None])
        stream = ResultStream(self.conn)

        stream.first()
        self.assertEqual(stream.status, 1)
        stream.drain()

        self.assertEqual(self.conn.pending(), 0)

    def testMultiStatementError(self):
        self.conn.add([commandOk("BEGIN"),
                       errorResult("first error", "23505"),
                       errorResult("second error", "25P02"),
                       None])
        stream = ResultStream(self.conn)
        stream.first()

        error = self.assertRaises(ExecutionFailed, stream.drain)

        self.assertEqual(error.message, "first error")
        self.assertEqual(self.conn.pending(), 0)

    def testMultiStatementRows(self):
        results = [commandOk("SET")]
        results.extend(selectResults(self.descriptions, intRows([1, 2])))
        self.conn.add(results)
        stream = ResultStream(self.conn)
        stream.first()

        self.assertRaises(ProtocolDesync, stream.drain)
        self.assertEqual(self.conn.pending(), 0)

    def testContextManager(self):
        self.conn.add(selectResults(self.descriptions, intRows(range(50))))

        with ResultStream(self.conn) as stream:
            stream.first()
            self.assertEqual(stream.state, STREAM_TUPLE)

        self.assertEqual(stream.state, STREAM_IDLE)
        self.assertEqual(self.conn.pending(), 0)

    def testContextManagerKeepsException(self):
        self.conn.add([errorResult("boom"), None])

        def use():
            with ResultStream(self.conn):
                raise KeyError("original")

        self.assertRaises(KeyError, use)
        self.assertEqual(self.conn.pending(), 0)
        self.flushLoggedErrors(ExecutionFailed)
