"""Retry and batching helpers for talking to throttled, eventually consistent AWS APIs."""

import logging
import time

from autoalarm.constants import SQS_BATCH_SIZE, THROTTLING_ERROR_CODES
from botocore.exceptions import ClientError
from collections.abc import Callable
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_incrementing,
)
from typing import Any

logger = logging.getLogger(__name__)


def with_linear_backoff(
    func: Callable,
    *args,
    attempts: int,
    initial_delay: float,
    increment: float,
    sleep: Callable[[float], None] = time.sleep,
    give_up_on: tuple[type[BaseException], ...] = (),
    **kwargs,
) -> Any:
    """Calls ``func(*args, **kwargs)``, retrying on failure. The ``n``-th retry waits
    ``initial_delay + increment * (n - 1)`` seconds. Once ``attempts`` calls have failed, the last exception is raised.

    :param func: The function to call.
    :type func: Callable

    :param attempts: Total number of calls to make before giving up.
    :type attempts: int

    :param initial_delay: Seconds to wait before the first retry.
    :type initial_delay: float

    :param increment: Seconds added to the wait before each further retry.
    :type increment: float

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional

    :param give_up_on: Exception types which are raised immediately rather than retried. Defaults to ().
    :type give_up_on: tuple, optional

    :return: Whatever ``func`` returns.
    """

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=initial_delay, increment=increment),
        retry=retry_if_not_exception_type(give_up_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    return retrying(func, *args, **kwargs)


def is_throttling_error(error: Exception) -> bool:
    """Determines whether an exception from ``botocore`` means we are calling an API too quickly."""

    return isinstance(error, ClientError) and error.response.get('Error', {}).get('Code') in THROTTLING_ERROR_CODES


class AdaptiveBatchSender:
    """Sends entries in fixed-size batches with a pause between batches that adapts to the API's behavior. When a batch
    is throttled, the pause grows by ``factor`` (up to ``max_delay``) and the throttled entries are sent again. When a
    batch completes in under ``fast_batch`` seconds, the pause shrinks by ``factor`` (down to ``min_delay``).

    :param send: Function which sends one batch of entries. It should behave like an SQS ``send_message_batch`` call
        with its ``Entries`` already bound: each entry carries an ``Id``, partial failures are reported in the
        response's ``Failed`` list, and throttling may instead be raised as a ``botocore`` ``ClientError``.
    :type send: Callable[[list[dict]], dict]

    :param batch_size: Entries per batch. Defaults to :py:data:`autoalarm.constants.SQS_BATCH_SIZE`.
    :type batch_size: int, optional

    :param min_delay: Shortest pause between batches, in seconds. Defaults to 1.0.
    :type min_delay: float, optional

    :param max_delay: Longest pause between batches, in seconds. Defaults to 2.0.
    :type max_delay: float, optional

    :param factor: Multiplier applied to the pause when adapting it. Defaults to 1.5.
    :type factor: float, optional

    :param fast_batch: Batches completing in fewer seconds than this shrink the pause. Defaults to 0.2.
    :type fast_batch: float, optional

    :param max_retries: Times a throttled batch is resent before its entries are reported as failed. Defaults to 5.
    :type max_retries: int, optional

    :param sleep: Function to wait with. Defaults to ``time.sleep``.
    :type sleep: Callable[[float], None], optional

    :param clock: Monotonic clock used to time batches. Defaults to ``time.monotonic``.
    :type clock: Callable[[], float], optional
    """

    def __init__(
        self,
        send: Callable[[list[dict]], dict],
        batch_size: int = SQS_BATCH_SIZE,
        min_delay: float = 1.0,
        max_delay: float = 2.0,
        factor: float = 1.5,
        fast_batch: float = 0.2,
        max_retries: int = 5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.send = send
        self.batch_size = batch_size
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.factor = factor
        self.fast_batch = fast_batch
        self.max_retries = max_retries
        self.sleep = sleep
        self.clock = clock
        #: Current pause between batches, always within ``[min_delay, max_delay]``
        self.delay: float = min_delay

    def send_all(self, entries: list[dict]) -> list[dict]:
        """Sends every entry, pausing between batches.

        :param entries: Entries to send, each with a unique ``Id``.
        :type entries: list[dict]

        :return: Entries which could not be sent.
        :rtype: list[dict]
        """

        failed = []
        batches = [entries[idx : idx + self.batch_size] for idx in range(0, len(entries), self.batch_size)]
        for number, batch in enumerate(batches):
            if number > 0:
                self.sleep(self.delay)
            failed.extend(self._send_batch(batch))

        if failed:
            logger.warning('%d of %d entries could not be sent', len(failed), len(entries))
        return failed

    def _send_batch(self, batch: list[dict]) -> list[dict]:
        errors = []
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                self.sleep(self.delay)

            started = self.clock()
            try:
                response = self.send(batch) or {}
            except ClientError as err:
                if not is_throttling_error(err):
                    raise
                self._slow_down()
                logger.info('Batch throttled; pause between batches is now %.2fs', self.delay)
                continue

            by_id = {entry['Id']: entry for entry in batch}
            throttled = []
            for failure in response.get('Failed', []):
                entry = by_id.get(failure.get('Id'))
                if entry is None:
                    continue
                if failure.get('Code') in THROTTLING_ERROR_CODES:
                    throttled.append(entry)
                else:
                    logger.error('Failed to send entry %s: %s', failure.get('Id'), failure.get('Message'))
                    errors.append(entry)

            if throttled:
                self._slow_down()
                logger.info('%d entries throttled; pause between batches is now %.2fs', len(throttled), self.delay)
                batch = throttled
                continue

            if self.clock() - started < self.fast_batch:
                self._speed_up()
            return errors

        logger.error('Giving up on %d entries after %d attempts', len(batch), self.max_retries + 1)
        return errors + batch

    def _slow_down(self):
        self.delay = min(self.delay * self.factor, self.max_delay)

    def _speed_up(self):
        self.delay = max(self.delay / self.factor, self.min_delay)
