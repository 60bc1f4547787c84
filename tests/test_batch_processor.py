from datetime import timedelta
from unittest.mock import patch

from tests.conftest import T0
from turnbuffer.models import BufferedMessage, BufferSession, DispatchJob
from turnbuffer.services import buffer_manager
from turnbuffer.services.batch_processor import (
    AUDIO_PENDING_PLACEHOLDER,
    build_aggregated_context,
    calculate_urgency_score,
    process_claimed_job,
)
from turnbuffer.services.dispatch_scheduler import claim_job, release_stale_claims, run_sweep
from turnbuffer.services.result import Result


def _at(seconds):
    return T0 + timedelta(seconds=seconds)


def _claimed_job(db, make_event, offsets=(0, 5, 12)):
    outcome = None
    for offset in offsets:
        outcome = buffer_manager.handle(
            db, "conv-1", make_event(received_at=_at(offset)), now=_at(offset), window_seconds=30
        )
    claim_job(db, outcome.job_id, now=outcome.due_at)
    return outcome


class TestRetries:
    def test_generator_failure_schedules_retry_with_backoff(self, db, make_event, generator, delivery):
        generator.generate.side_effect = RuntimeError("OpenAI API error: 503")
        outcome = _claimed_job(db, make_event)

        result = process_claimed_job(
            db, outcome.job_id, generator=generator, delivery=delivery, now=_at(42), max_attempts=3, retry_backoff_seconds=30
        )

        assert result == "retried"
        job = db.get(DispatchJob, outcome.job_id)
        assert job.status == "scheduled"
        assert job.attempts == 1
        assert job.due_at == _at(72)
        assert "503" in job.last_error
        assert db.get(BufferSession, outcome.session_id).status == "processing"
        delivery.send.assert_not_called()

    def test_generator_failing_every_attempt_completes_with_error(self, db, make_event, generator, delivery):
        generator.generate.side_effect = RuntimeError("OpenAI API error: 503")
        outcome = None
        for offset in (0, 5, 12):
            outcome = buffer_manager.handle(
                db, "conv-1", make_event(received_at=_at(offset)), now=_at(offset), window_seconds=30
            )

        sweeps = [
            run_sweep(db, generator=generator, delivery=delivery, max_attempts=3, retry_backoff_seconds=30, now=now)
            for now in (_at(42), _at(72), _at(132))
        ]

        assert [s["retried"] for s in sweeps] == [1, 1, 0]
        assert sweeps[2]["failed"] == 1
        assert generator.generate.call_count == 3
        delivery.send.assert_not_called()

        job = db.get(DispatchJob, outcome.job_id)
        session = db.get(BufferSession, outcome.session_id)
        assert job.status == "failed"
        assert job.attempts == 3
        assert session.status == "completed"
        assert session.error_message
        assert session.processed_at == _at(132)

        later = run_sweep(db, generator=generator, delivery=delivery, now=_at(1000))
        assert later["claimed"] == 0
        assert generator.generate.call_count == 3

    def test_delivery_failure_is_retried(self, db, make_event, generator, delivery):
        delivery.send.return_value = Result.failure("Chatwoot API error: 502", "api_error")
        outcome = _claimed_job(db, make_event)

        result = process_claimed_job(
            db, outcome.job_id, generator=generator, delivery=delivery, now=_at(42), max_attempts=3, retry_backoff_seconds=30
        )

        assert result == "retried"
        job = db.get(DispatchJob, outcome.job_id)
        assert job.attempts == 1
        assert "delivery" in job.last_error
        assert db.query(BufferedMessage).filter(BufferedMessage.consumed.is_(True)).count() == 0

    @patch("turnbuffer.services.batch_processor.alert_error")
    def test_invalid_decision_fails_without_retry(self, mock_alert, db, make_event, generator, delivery):
        generator.generate.return_value = {"should_respond": True, "content": "", "confidence": 0.5, "intent": "x"}
        outcome = _claimed_job(db, make_event)

        result = process_claimed_job(
            db, outcome.job_id, generator=generator, delivery=delivery, now=_at(42), max_attempts=3
        )

        assert result == "failed"
        job = db.get(DispatchJob, outcome.job_id)
        session = db.get(BufferSession, outcome.session_id)
        assert job.status == "failed"
        assert job.attempts == 1
        assert job.last_error.startswith("invalid_decision")
        assert session.status == "completed"
        assert session.error_message.startswith("invalid_decision")
        delivery.send.assert_not_called()
        mock_alert.assert_called_once()

    def test_confidence_out_of_range_is_invalid(self, db, make_event, generator, delivery):
        generator.generate.return_value = {"should_respond": False, "confidence": 7, "intent": "x"}
        outcome = _claimed_job(db, make_event)

        result = process_claimed_job(db, outcome.job_id, generator=generator, delivery=delivery, now=_at(42))

        assert result == "failed"


class TestProcessClaimedJob:
    def test_skips_job_that_is_not_claimed(self, db, make_event, generator, delivery):
        outcome = buffer_manager.handle(db, "conv-1", make_event(), now=T0)

        result = process_claimed_job(db, outcome.job_id, generator=generator, delivery=delivery, now=_at(30))

        assert result == "skipped"
        generator.generate.assert_not_called()

    def test_empty_session_completes_without_reply(self, db, make_event, generator, delivery):
        outcome = _claimed_job(db, make_event, offsets=(0,))
        db.query(BufferedMessage).delete()
        db.commit()

        result = process_claimed_job(db, outcome.job_id, generator=generator, delivery=delivery, now=_at(31))

        assert result == "completed"
        generator.generate.assert_not_called()
        delivery.send.assert_not_called()
        assert db.get(BufferSession, outcome.session_id).status == "completed"


class TestUrgencyScore:
    def test_baseline(self):
        assert calculate_urgency_score(1, 0, "hello") == 5

    def test_many_messages_and_question(self):
        assert calculate_urgency_score(4, 60, "where is my order?") == 7

    def test_capped_at_ten(self):
        assert calculate_urgency_score(6, 10, "URGENT help?? please") == 10

    def test_burst_counts(self):
        assert calculate_urgency_score(3, 8, "a b c") == 6


class TestBuildAggregatedContext:
    def test_audio_without_transcript_gets_placeholder(self):
        session = BufferSession(conversation_id="conv-1", user_id="user-1")
        messages = [
            BufferedMessage(body="hi", kind="text", attachments=[], sender_info={"id": "user-1"}, received_at=T0),
            BufferedMessage(
                body=None,
                kind="audio",
                attachments=[{"content_type": "audio/ogg", "data_url": "https://cdn/1.ogg"}],
                sender_info={"id": "user-1"},
                received_at=_at(4),
            ),
        ]

        context = build_aggregated_context(session, messages)

        assert context.message_count == 2
        assert context.combined_text == "hi"
        assert context.time_span_seconds == 4
        assert context.audio_transcripts == [AUDIO_PENDING_PLACEHOLDER]
        assert context.attachments[0].type == "audio"
        assert context.attachments[0].url == "https://cdn/1.ogg"
        assert context.sender == {"id": "user-1"}


class TestReclaimedClaims:
    def _steal(self, other_db, job_id):
        release_stale_claims(other_db, now=_at(400), stale_seconds=300, max_attempts=3)
        assert claim_job(other_db, job_id, now=_at(400)) is True

    def test_skips_job_re_claimed_by_another_sweep(self, db, other_db, make_event, generator, delivery):
        outcome = _claimed_job(db, make_event, offsets=(0,))
        self._steal(other_db, outcome.job_id)

        result = process_claimed_job(
            db, outcome.job_id, generator=generator, delivery=delivery, claimed_at=_at(30), now=_at(401)
        )

        assert result == "skipped"
        generator.generate.assert_not_called()
        delivery.send.assert_not_called()
        assert db.get(DispatchJob, outcome.job_id).claimed_at == _at(400)

    def test_does_not_finalize_claim_lost_mid_processing(self, db, other_db, make_event, generator, delivery):
        outcome = _claimed_job(db, make_event, offsets=(0,))
        decision = dict(generator.generate.return_value)

        def generate_while_other_sweep_steals(session_id, context):
            self._steal(other_db, outcome.job_id)
            return decision

        generator.generate.side_effect = generate_while_other_sweep_steals

        result = process_claimed_job(
            db, outcome.job_id, generator=generator, delivery=delivery, claimed_at=_at(30), now=_at(401)
        )

        assert result == "skipped"
        job = db.get(DispatchJob, outcome.job_id)
        assert job.status == "claimed"
        assert job.claimed_at == _at(400)
        assert db.get(BufferSession, outcome.session_id).status == "processing"
        assert db.query(BufferedMessage).filter(BufferedMessage.consumed.is_(True)).count() == 0

    def test_does_not_requeue_claim_lost_mid_processing(self, db, other_db, make_event, generator, delivery):
        outcome = _claimed_job(db, make_event, offsets=(0,))

        def fail_while_other_sweep_steals(session_id, context):
            self._steal(other_db, outcome.job_id)
            raise RuntimeError("OpenAI API error: 503")

        generator.generate.side_effect = fail_while_other_sweep_steals

        result = process_claimed_job(
            db,
            outcome.job_id,
            generator=generator,
            delivery=delivery,
            claimed_at=_at(30),
            now=_at(401),
            max_attempts=3,
            retry_backoff_seconds=30,
        )

        assert result == "skipped"
        job = db.get(DispatchJob, outcome.job_id)
        assert job.status == "claimed"
        assert job.claimed_at == _at(400)
        assert job.attempts == 1
