"""Unit tests for mail/queue.py and mail/templates.py -- asynchronous delivery with retries.

Covers:
- queued jobs are delivered by the worker pool without blocking enqueue()
- a transport that fails (returns False or raises) is retried up to max_attempts
- exhausted jobs land in queue.failed, which keeps only the latest failed_limit jobs
- enqueue() before start() records the job as failed
- templates escape interpolated values
"""

import asyncio

from mail.queue import EmailJob, EmailQueue
from mail.templates import render_verify_email

from conftest import RecordingTransport


def _run(queue: EmailQueue, jobs: list[EmailJob]) -> None:
    async def scenario():
        await queue.start()
        for job in jobs:
            queue.enqueue(job)
        # enqueue() hands off via call_soon_threadsafe; let the loop apply it.
        await asyncio.sleep(0)
        await queue.join()
        await queue.stop()

    asyncio.run(scenario())


def _job(to: str = "a@example.com") -> EmailJob:
    return EmailJob(to=to, subject="Verify your email address.", html="<p>hi</p>")


class TestDelivery:
    def test_jobs_delivered(self):
        transport = RecordingTransport()
        queue = EmailQueue(transport, retry_delay=0, workers=2)
        _run(queue, [_job("a@example.com"), _job("b@example.com")])
        assert sorted(to for to, _s, _h in transport.sent) == ["a@example.com", "b@example.com"]
        assert queue.sent == 2
        assert not queue.failed

    def test_retry_until_success(self):
        transport = RecordingTransport(fail_times=2)
        queue = EmailQueue(transport, max_attempts=3, retry_delay=0, workers=1)
        job = _job()
        _run(queue, [job])
        assert transport.attempts == 3
        assert job.attempts == 3
        assert len(transport.sent) == 1
        assert not queue.failed

    def test_raising_transport_counts_as_failure(self):
        transport = RecordingTransport(fail_times=1, raises=True)
        queue = EmailQueue(transport, max_attempts=2, retry_delay=0, workers=1)
        _run(queue, [_job()])
        assert transport.attempts == 2
        assert len(transport.sent) == 1

    def test_exhausted_job_is_recorded(self):
        transport = RecordingTransport(fail_times=10)
        queue = EmailQueue(transport, max_attempts=3, retry_delay=0, workers=1)
        job = _job()
        _run(queue, [job])
        assert transport.attempts == 3
        assert list(queue.failed) == [job]
        assert queue.sent == 0

    def test_enqueue_before_start(self):
        queue = EmailQueue(RecordingTransport())
        job = _job()
        queue.enqueue(job)
        assert list(queue.failed) == [job]
        assert not queue.running

    def test_failed_buffer_keeps_latest_jobs(self):
        queue = EmailQueue(RecordingTransport(), failed_limit=2)
        jobs = [_job(f"{n}@example.com") for n in range(3)]
        for job in jobs:
            queue.enqueue(job)
        assert list(queue.failed) == jobs[1:]


def test_verify_template_escapes_name():
    html = render_verify_email("http://client.test/verify?token=abc", "<script>x</script>")
    assert "<script>x</script>" not in html
    assert "&lt;script&gt;" in html
    assert "http://client.test/verify?token=abc" in html
