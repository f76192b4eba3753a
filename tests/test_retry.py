import unittest
from unittest import mock

from calnotes.retry import RetryPolicy


class RetryPolicyTests(unittest.TestCase):
    def test_retries_until_success(self) -> None:
        sleep = mock.Mock()
        policy = RetryPolicy(max_attempts=3, backoff_seconds=(0.1, 0.2), sleep=sleep)
        attempts: list[int] = []

        def operation(attempt: int) -> str:
            attempts.append(attempt)
            if attempt < 2:
                raise FileExistsError("taken")
            return "ok"

        self.assertEqual(policy.run(operation), "ok")
        self.assertEqual(attempts, [0, 1, 2])
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.1, 0.2])

    def test_last_failure_propagates(self) -> None:
        sleep = mock.Mock()
        policy = RetryPolicy(max_attempts=2, sleep=sleep)
        operation = mock.Mock(side_effect=OSError("disk"))

        with self.assertRaises(OSError):
            policy.run(operation)
        self.assertEqual(operation.call_count, 2)
        self.assertEqual(sleep.call_count, 1)

    def test_non_retryable_errors_are_not_retried(self) -> None:
        policy = RetryPolicy(sleep=mock.Mock())
        operation = mock.Mock(side_effect=ValueError("bad"))
        with self.assertRaises(ValueError):
            policy.run(operation)
        self.assertEqual(operation.call_count, 1)

    def test_delay_repeats_last_backoff(self) -> None:
        policy = RetryPolicy(backoff_seconds=(0.1, 0.2))
        self.assertEqual(policy.delay_for(0), 0.1)
        self.assertEqual(policy.delay_for(5), 0.2)
        self.assertEqual(RetryPolicy(backoff_seconds=()).delay_for(0), 0.0)


if __name__ == "__main__":
    unittest.main()
