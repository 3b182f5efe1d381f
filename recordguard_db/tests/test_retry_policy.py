import random
import unittest
from unittest.mock import AsyncMock, MagicMock

from recordguard_db.engine.retry_policy import RetryPolicy, NO_RETRY, DEFAULT_RETRY_POLICY, with_retry, is_retryable
from recordguard_db.config import Settings
from recordguard_exception_model.exception import ConflictException, DuplicateRecordError, LockHeldError, \
    RecordNotFoundError, InvalidDataException, TransientStoreError


class TestRetryPolicy(unittest.TestCase):

    def test_defaults(self):
        self.assertEqual(DEFAULT_RETRY_POLICY.max_retries, 3)
        self.assertEqual(DEFAULT_RETRY_POLICY.max_attempts, 4)
        self.assertEqual(NO_RETRY.max_attempts, 1)

    def test_delay_without_jitter_doubles_and_caps(self):
        policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=5.0, jitter=0.0)
        self.assertEqual([policy.compute_delay(a) for a in range(1, 6)], [1.0, 2.0, 4.0, 5.0, 5.0])

    def test_delay_jitter_is_bounded(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0, jitter=1.0)
        rng = random.Random(7)
        for attempt in range(1, 5):
            delay = policy.compute_delay(attempt, rng)
            base = 2 ** (attempt - 1)
            self.assertGreaterEqual(delay, base)
            self.assertLessEqual(delay, base + 1.0)

    def test_delay_never_exceeds_max(self):
        policy = RetryPolicy(base_delay=4.5, max_delay=5.0, jitter=1.0)
        for _ in range(20):
            self.assertLessEqual(policy.compute_delay(1), 5.0)

    def test_invalid_policy(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_retries=-1)
        with self.assertRaises(ValueError):
            RetryPolicy(jitter=-0.5)

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(Settings(max_retries=1, base_delay=0.1, max_delay=0.5, jitter=0.0))
        self.assertEqual(policy, RetryPolicy(max_retries=1, base_delay=0.1, max_delay=0.5, jitter=0.0))

    def test_retryable_classification(self):
        self.assertTrue(is_retryable(TransientStoreError("x")))
        self.assertTrue(is_retryable(ConnectionError("x")))
        for error in (ConflictException("x"), DuplicateRecordError("x"), RecordNotFoundError("x"),
                      LockHeldError("x"), InvalidDataException("x")):
            self.assertFalse(is_retryable(error))


class TestWithRetry(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.sleep = AsyncMock()
        self.policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=5.0, jitter=0.0)

    async def test_success_first_attempt(self):
        op = AsyncMock(return_value="ok")
        self.assertEqual(await with_retry(op, self.policy, sleep=self.sleep), "ok")
        self.assertEqual(op.await_count, 1)
        self.sleep.assert_not_awaited()

    async def test_always_failing_runs_n_plus_one_times(self):
        for n in (0, 1, 3):
            with self.subTest(max_retries=n):
                op = AsyncMock(side_effect=TransientStoreError("down"))
                policy = RetryPolicy(max_retries=n, base_delay=0.0, max_delay=0.0, jitter=0.0)
                with self.assertRaises(TransientStoreError):
                    await with_retry(op, policy, sleep=AsyncMock())
                self.assertEqual(op.await_count, n + 1)

    async def test_recovers_after_transient_failures(self):
        op = AsyncMock(side_effect=[TransientStoreError("down"), TransientStoreError("down"), "ok"])
        on_retry = MagicMock()
        result = await with_retry(op, self.policy, on_retry=on_retry, sleep=self.sleep)

        self.assertEqual(result, "ok")
        self.assertEqual(op.await_count, 3)
        self.assertEqual([c.args[0] for c in on_retry.call_args_list], [1, 2])
        self.assertEqual([c.args[0] for c in self.sleep.await_args_list], [1.0, 2.0])

    async def test_conflict_is_not_retried(self):
        op = AsyncMock(side_effect=ConflictException("conflict"))
        with self.assertRaises(ConflictException):
            await with_retry(op, RetryPolicy(max_retries=10), sleep=self.sleep)
        self.assertEqual(op.await_count, 1)
        self.sleep.assert_not_awaited()

    async def test_non_retryable_errors_surface_immediately(self):
        for error in (DuplicateRecordError("dup"), RecordNotFoundError("nf"), LockHeldError("held"),
                      InvalidDataException("bad")):
            with self.subTest(error=type(error).__name__):
                op = AsyncMock(side_effect=error)
                with self.assertRaises(type(error)):
                    await with_retry(op, self.policy, sleep=self.sleep)
                self.assertEqual(op.await_count, 1)

    async def test_last_error_is_rethrown(self):
        errors = [TransientStoreError("first"), TransientStoreError("second")]
        op = AsyncMock(side_effect=errors)
        with self.assertRaises(TransientStoreError) as ctx:
            await with_retry(op, RetryPolicy(max_retries=1, jitter=0.0), sleep=self.sleep)
        self.assertIs(ctx.exception, errors[1])

    async def test_exhaustion_is_logged(self):
        op = AsyncMock(side_effect=TransientStoreError("down"))
        with self.assertLogs("recordguard_db.engine.retry_policy", level="ERROR"):
            with self.assertRaises(TransientStoreError):
                await with_retry(op, RetryPolicy(max_retries=1, jitter=0.0), sleep=self.sleep)


if __name__ == '__main__':
    unittest.main()
