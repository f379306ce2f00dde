import threading
import pytest
from unittest.mock import patch
from sqlalchemy.exc import IntegrityError, OperationalError
from data.database import Participation, VariantCounter
from models.experiments import ExperimentCreate, VariantSpec, ExperimentStatus
from models.events import ParticipationCreate
from models.results import VariantCounters
from services import aggregator, lifecycle
from services.aggregator import IngestOutcome
from services.errors import ConflictError, InvalidTransitionError, ValidationError, TransientStoreError
from celery_tasks.participation_tasks import ingest_participation


def _new_experiment(db, variants=(("Control", 50), ("Treatment", 50)), status=None):
    data = ExperimentCreate(
        name="Found item photo prompt",
        variants=[VariantSpec(name=name, percentage=pct) for name, pct in variants],
    )
    experiment = lifecycle.create_new_experiment(db, data)
    if status:
        experiment = lifecycle.transition(db, _NullCache(), experiment.id, status)
    return experiment


class _NullCache:
    def invalidate_experiment(self, experiment_id):
        pass


def test_losing_a_concurrent_transition_raises_conflict(db_session, session_factory):
    exp_id = _new_experiment(db_session).id

    first, second = session_factory(), session_factory()
    try:
        # second has read the experiment while it was still draft
        lifecycle.get_experiment(second, exp_id)
        lifecycle.transition(first, _NullCache(), exp_id, ExperimentStatus.RUNNING)

        with pytest.raises(ConflictError):
            lifecycle.transition(second, _NullCache(), exp_id, ExperimentStatus.RUNNING)
    finally:
        first.close()
        second.close()

    assert lifecycle.get_experiment(db_session, exp_id).status == "running"


def test_check_transition_table():
    assert lifecycle.check_transition("draft", "running") == "start"
    assert lifecycle.check_transition("running", "paused") == "pause"
    assert lifecycle.check_transition("paused", "running") == "resume"
    assert lifecycle.check_transition("paused", "completed") == "complete"
    for current, target in [("draft", "completed"), ("draft", "paused"), ("running", "running"), ("completed", "running")]:
        with pytest.raises(InvalidTransitionError):
            lifecycle.check_transition(current, target)


def test_create_does_not_touch_the_session_when_invalid(db_session):
    data = ExperimentCreate(name="Ninety", variants=[VariantSpec(name="A", percentage=60), VariantSpec(name="B", percentage=30)])
    with patch.object(db_session, "add") as add, patch.object(db_session, "commit") as commit:
        with pytest.raises(ValidationError):
            lifecycle.create_new_experiment(db_session, data)
    add.assert_not_called()
    commit.assert_not_called()


def test_ingest_is_idempotent(db_session):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    record = ParticipationCreate(experiment_id=exp_id, participant_id="u1", variant_name="Control", converted=True)

    assert aggregator.ingest(db_session, record) == IngestOutcome.OK
    assert aggregator.ingest(db_session, record) == IngestOutcome.DUPLICATE_IGNORED

    assert aggregator.snapshot(db_session, exp_id) == {
        "Control": VariantCounters(participants=1, conversions=1),
        "Treatment": VariantCounters(participants=0, conversions=0),
    }
    assert lifecycle.get_experiment(db_session, exp_id).participant_count == 1


def test_ingest_rejects_variant_switch(db_session):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    aggregator.ingest(db_session, ParticipationCreate(experiment_id=exp_id, participant_id="u2", variant_name="Control"))

    with pytest.raises(ValidationError, match="already counted under variant 'Control'"):
        aggregator.ingest(db_session, ParticipationCreate(experiment_id=exp_id, participant_id="u2", variant_name="Treatment"))

    assert aggregator.snapshot(db_session, exp_id)["Treatment"].participants == 0


def test_completed_experiment_freezes_counters(db_session):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    lifecycle.transition(db_session, _NullCache(), exp_id, ExperimentStatus.COMPLETED)

    with pytest.raises(ValidationError, match="does not accept outcomes"):
        aggregator.ingest(db_session, ParticipationCreate(experiment_id=exp_id, participant_id="u3", variant_name="Control"))


def _racing(session_factory, change):
    """Run change on another session right after ingest has validated its target."""
    real_validate = aggregator._validate_target

    def validate_then_change(db, record):
        experiment = real_validate(db, record)
        other = session_factory()
        try:
            change(other, record.experiment_id)
        finally:
            other.close()
        return experiment

    return patch("services.aggregator._validate_target", side_effect=validate_then_change)


def _complete(db, experiment_id):
    lifecycle.transition(db, _NullCache(), experiment_id, ExperimentStatus.COMPLETED)


def _delete(db, experiment_id):
    lifecycle.delete_experiment(db, _NullCache(), experiment_id)


def test_outcome_racing_completion_is_rejected(db_session, session_factory):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    record = ParticipationCreate(experiment_id=exp_id, participant_id="late", variant_name="Control", converted=True)

    with _racing(session_factory, _complete):
        with pytest.raises(ValidationError, match="no longer accepts outcomes"):
            aggregator.ingest(db_session, record)

    assert aggregator.snapshot(db_session, exp_id)["Control"] == VariantCounters(participants=0, conversions=0)
    assert db_session.query(Participation).filter(Participation.experiment_id == exp_id).count() == 0


def test_conversion_racing_completion_is_rejected(db_session, session_factory):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    aggregator.ingest(db_session, ParticipationCreate(experiment_id=exp_id, participant_id="u8", variant_name="Treatment"))
    converted = ParticipationCreate(experiment_id=exp_id, participant_id="u8", variant_name="Treatment", converted=True)

    with _racing(session_factory, _complete):
        with pytest.raises(ValidationError, match="no longer accepts outcomes"):
            aggregator.ingest(db_session, converted)

    assert aggregator.snapshot(db_session, exp_id)["Treatment"] == VariantCounters(participants=1, conversions=0)
    stored = db_session.query(Participation).filter(Participation.experiment_id == exp_id).one()
    assert stored.converted is False


def test_outcome_racing_deletion_leaves_nothing_behind(db_session, session_factory):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    record = ParticipationCreate(experiment_id=exp_id, participant_id="orphan", variant_name="Control")

    with _racing(session_factory, _delete):
        with pytest.raises(ValidationError):
            aggregator.ingest(db_session, record)

    assert db_session.query(VariantCounter).filter(VariantCounter.experiment_id == exp_id).count() == 0
    assert db_session.query(Participation).filter(Participation.experiment_id == exp_id).count() == 0


def _unique_violation():
    return IntegrityError("INSERT INTO participations", {}, Exception("UNIQUE constraint failed"))


def test_losing_the_first_insert_race_rereads_the_winner(db_session, session_factory):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    record = ParticipationCreate(experiment_id=exp_id, participant_id="racer", variant_name="Control")
    real_flush = db_session.flush
    competitor_done = []

    def flush_after_competitor(*args, **kwargs):
        if not competitor_done:
            # another worker inserts the same participant first
            other = session_factory()
            try:
                competitor_done.append(aggregator.ingest(other, record))
            finally:
                other.close()
            raise _unique_violation()
        return real_flush(*args, **kwargs)

    with patch.object(db_session, "flush", side_effect=flush_after_competitor):
        assert aggregator.ingest(db_session, record) == IngestOutcome.DUPLICATE_IGNORED

    assert competitor_done == [IngestOutcome.OK]
    assert aggregator.snapshot(db_session, exp_id)["Control"] == VariantCounters(participants=1, conversions=0)
    assert lifecycle.get_experiment(db_session, exp_id).participant_count == 1


def test_repeated_insert_races_give_up_with_conflict(db_session):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    record = ParticipationCreate(experiment_id=exp_id, participant_id="unlucky", variant_name="Treatment")

    with patch.object(db_session, "flush", side_effect=_unique_violation()) as flush:
        with pytest.raises(ConflictError):
            aggregator.ingest(db_session, record)

    assert flush.call_count == aggregator.MAX_RETRIES
    assert aggregator.snapshot(db_session, exp_id)["Treatment"].participants == 0


def test_concurrent_conversion_is_added_once(db_session, session_factory):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    seen = ParticipationCreate(experiment_id=exp_id, participant_id="u7", variant_name="Control")
    converted = ParticipationCreate(experiment_id=exp_id, participant_id="u7", variant_name="Control", converted=True)
    assert aggregator.ingest(db_session, seen) == IngestOutcome.OK

    # db_session keeps the participation loaded as not converted
    stale = db_session.query(Participation).filter(Participation.experiment_id == exp_id, Participation.participant_id == "u7").one()
    assert stale.converted is False

    other = session_factory()
    try:
        assert aggregator.ingest(other, converted) == IngestOutcome.OK
    finally:
        other.close()

    assert aggregator.ingest(db_session, converted) == IngestOutcome.DUPLICATE_IGNORED
    assert aggregator.snapshot(db_session, exp_id)["Control"] == VariantCounters(participants=1, conversions=1)


def test_concurrent_ingest_loses_no_updates(db_session, session_factory):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    workers, per_worker = 8, 5
    start = threading.Barrier(workers)
    outcomes, failures = [], []

    def deliver(worker):
        db = session_factory()
        try:
            start.wait()
            for i in range(per_worker):
                variant = "Control" if i % 2 else "Treatment"
                record = ParticipationCreate(experiment_id=exp_id, participant_id=f"w{worker}-{i}",
                                             variant_name=variant, converted=i == 0)
                outcomes.append(aggregator.ingest(db, record))
        except Exception as e:
            failures.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=deliver, args=(w,)) for w in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert failures == []
    assert outcomes == [IngestOutcome.OK] * workers * per_worker
    counters = aggregator.snapshot(db_session, exp_id)
    assert counters["Control"] == VariantCounters(participants=2 * workers, conversions=0)
    assert counters["Treatment"] == VariantCounters(participants=3 * workers, conversions=workers)
    db_session.expire_all()
    assert lifecycle.get_experiment(db_session, exp_id).participant_count == workers * per_worker


def test_snapshot_follows_declared_order(db_session):
    exp_id = _new_experiment(db_session, variants=(("B", 20), ("Control", 30), ("A", 50))).id
    assert list(aggregator.snapshot(db_session, exp_id)) == ["B", "Control", "A"]


def test_store_outage_surfaces_as_transient_error(db_session):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    record = ParticipationCreate(experiment_id=exp_id, participant_id="u4", variant_name="Control")

    with patch.object(db_session, "query", side_effect=OperationalError("SELECT", {}, Exception("database is locked"))):
        with pytest.raises(TransientStoreError):
            aggregator.ingest(db_session, record)

    assert aggregator.snapshot(db_session, exp_id)["Control"].participants == 0


def test_celery_task_applies_outcome(db_session):
    exp_id = _new_experiment(db_session, status=ExperimentStatus.RUNNING).id
    payload = {"experiment_id": exp_id, "participant_id": "u5", "variant_name": "Treatment", "converted": True}

    assert ingest_participation.apply(args=[payload]).get() == "ok"
    assert ingest_participation.apply(args=[payload]).get() == "duplicate_ignored"
    assert aggregator.snapshot(db_session, exp_id)["Treatment"] == VariantCounters(participants=1, conversions=1)


def test_celery_task_reports_rejected_outcome(db_session):
    exp_id = _new_experiment(db_session).id
    payload = {"experiment_id": exp_id, "participant_id": "u6", "variant_name": "Control"}

    result = ingest_participation.apply(args=[payload])
    assert result.failed()
    with pytest.raises(ValidationError):
        result.get()
