from __future__ import annotations

import json

import pytest
from sqlalchemy import func, insert, select

from esglabel.assignment import (
    PerUserAssigner,
    SharedPoolAssigner,
    get_assigner,
    normalize_fields,
)
from esglabel.errors import ConflictError, SelectionError, ValidationError
from esglabel.importer import RecordIn, import_records
from esglabel.models import STATUS_COMPLETED, STATUS_PENDING, Annotation, PoolAssignment
from esglabel.schemas import AnnotationIn


@pytest.fixture()
def project_id(session) -> int:
    result = import_records(session, "acme", [
        RecordIn("<p>We will cut emissions by 40%.</p>", 3, [10, 20, 110, 40]),
        RecordIn("Board oversight of climate risk.", 4),
        RecordIn("Scope 1 emissions fell 8%.", 5),
    ], page_urls={3: "p3", 4: "p4", 5: "p5"})
    return result.project_id


def _labels(user_id: int, **fields) -> AnnotationIn:
    base = {"user_id": user_id, "esg_type": ["E"], "promise_status": "Yes", "evidence_status": "No"}
    base.update(fields)
    return AnnotationIn(**base)


class TestNormalizeFields:
    def test_promise_no_forces_na(self):
        out = normalize_fields({
            "promise_status": "No", "verification_timeline": "already",
            "evidence_status": "Yes", "evidence_quality": "Clear",
        })
        assert out["verification_timeline"] == "N/A"
        assert out["evidence_status"] == "N/A"
        assert out["evidence_quality"] == "N/A"

    def test_quality_only_with_evidence(self):
        assert normalize_fields({"evidence_status": "No", "evidence_quality": "Clear"})["evidence_quality"] == "N/A"
        kept = normalize_fields({"promise_status": "Yes", "evidence_status": "Yes", "evidence_quality": "Clear"})
        assert kept["evidence_quality"] == "Clear"

    def test_esg_type_canonical_order(self):
        assert normalize_fields({"esg_type": ["G", "E", "G"]})["esg_type"] == ["E", "G"]

    def test_does_not_mutate_input(self):
        fields = {"promise_status": "No", "evidence_status": "Yes"}
        normalize_fields(fields)
        assert fields["evidence_status"] == "Yes"


class TestPerUserAssigner:
    def test_hands_out_lowest_id_first(self, session, project_id, alice):
        task = PerUserAssigner().next_task(session, project_id, alice)
        assert task.original_data == "<p>We will cut emissions by 40%.</p>"
        assert task.text == "We will cut emissions by 40%."
        assert task.page_number == 3
        assert task.bbox == [10.0, 20.0, 110.0, 40.0]
        assert task.source_url == "p3"
        assert task.status == STATUS_PENDING

    def test_same_task_until_saved(self, session, project_id, alice):
        assigner = PerUserAssigner()
        first = assigner.next_task(session, project_id, alice)
        assert assigner.next_task(session, project_id, alice).id == first.id
        rows = session.execute(select(func.count(Annotation.id))).scalar_one()
        assert rows == 1

    def test_completed_record_never_returned(self, session, project_id, alice):
        assigner = PerUserAssigner()
        seen = []
        while (task := assigner.next_task(session, project_id, alice)) is not None:
            assert task.id not in seen
            seen.append(task.id)
            assigner.save(session, task.id, alice, _labels(alice.id))
        assert len(seen) == 3
        assert assigner.next_task(session, project_id, alice) is None
        assert assigner.progress(session, project_id, alice).model_dump() == {"total": 3, "completed": 3}

    def test_users_progress_independently(self, session, project_id, alice, bob):
        assigner = PerUserAssigner()
        task = assigner.next_task(session, project_id, alice)
        assigner.save(session, task.id, alice, _labels(alice.id))
        assert assigner.next_task(session, project_id, bob).id == task.id
        assert assigner.completed_count(session, project_id, alice) == 1
        assert assigner.completed_count(session, project_id, bob) == 0

    def test_save_normalizes(self, session, project_id, alice):
        assigner = PerUserAssigner()
        task = assigner.next_task(session, project_id, alice)
        assigner.save(session, task.id, alice, _labels(
            alice.id, promise_status="No", evidence_status="Yes",
            verification_timeline="already", evidence_quality="Clear", esg_type=["S", "E"],
        ))
        row = session.execute(select(Annotation)).scalars().one()
        assert row.status == STATUS_COMPLETED
        assert row.evidence_status == "N/A"
        assert row.verification_timeline == "N/A"
        assert row.evidence_quality == "N/A"
        assert json.loads(row.esg_type_json) == ["E", "S"]

    def test_spans_decide_strings(self, session, project_id, alice):
        assigner = PerUserAssigner()
        task = assigner.next_task(session, project_id, alice)
        result = assigner.save(session, task.id, alice, _labels(
            alice.id, promise_string="ignored",
            spans=[{"label": "promise", "start": 0, "end": 7}, {"label": "evidence", "start": 12, "end": 21}],
        ))
        assert result.promise_string == "We will"
        assert result.evidence_string == "emissions"

    def test_bad_span_leaves_row_untouched(self, session, project_id, alice):
        assigner = PerUserAssigner()
        task = assigner.next_task(session, project_id, alice)
        with pytest.raises(SelectionError):
            assigner.save(session, task.id, alice, _labels(
                alice.id, spans=[{"label": "promise", "start": 0, "end": 500}],
            ))
        row = session.execute(select(Annotation)).scalars().one()
        assert row.status == STATUS_PENDING

    def test_control_characters_in_text(self, session, alice):
        result = import_records(session, "ctrl", [RecordIn("Scope 1\x0cR&D spend", 1), RecordIn("clean", 1)])
        assigner = PerUserAssigner()
        task = assigner.next_task(session, result.project_id, alice)
        assert task.text == "Scope 1 R&D spend"
        saved = assigner.save(session, task.id, alice, _labels(
            alice.id, promise_status="Yes", spans=[{"label": "promise", "start": 8, "end": 11}],
        ))
        assert saved.promise_string == "R&D"
        assert assigner.next_task(session, result.project_id, alice).text == "clean"

    def test_resave_overwrites(self, session, project_id, alice):
        assigner = PerUserAssigner()
        task = assigner.next_task(session, project_id, alice)
        assigner.save(session, task.id, alice, _labels(alice.id, promise_string="first"))
        assigner.save(session, task.id, alice, _labels(alice.id, promise_string="second"))
        rows = session.execute(select(Annotation)).scalars().all()
        assert [r.promise_string for r in rows] == ["second"]


class TestSharedPoolAssigner:
    def test_claims_are_exclusive(self, session, project_id, alice, bob):
        assigner = SharedPoolAssigner()
        a = assigner.next_task(session, project_id, alice)
        b = assigner.next_task(session, project_id, bob)
        assert a.id != b.id
        owners = dict(session.execute(select(PoolAssignment.source_record_id, PoolAssignment.annotator_name)).all())
        assert owners == {a.id: "alice", b.id: "bob"}

    def test_resumes_own_claim(self, session, project_id, alice):
        assigner = SharedPoolAssigner()
        first = assigner.next_task(session, project_id, alice)
        assert assigner.next_task(session, project_id, alice).id == first.id

    def test_each_record_labeled_once(self, session, project_id, alice, bob):
        assigner = SharedPoolAssigner()
        done = []
        for user in (alice, bob, alice, bob):
            task = assigner.next_task(session, project_id, user)
            if task is None:
                continue
            assigner.save(session, task.id, user, _labels(user.id))
            done.append(task.id)
        assert sorted(done) == sorted(set(done))
        assert len(done) == 3
        assert assigner.next_task(session, project_id, alice) is None
        assert assigner.progress(session, project_id, bob).completed == 3

    def test_lost_race_moves_to_next_record(self, session, project_id, alice, monkeypatch):
        assigner = SharedPoolAssigner()
        original = SharedPoolAssigner._claim
        raced = {}

        def rival_first(self, session, record_id, user):
            if not raced:
                raced["record"] = record_id
                session.execute(insert(PoolAssignment).values(
                    source_record_id=record_id, annotator_name="rival", status=STATUS_PENDING,
                ))
                session.commit()
            return original(self, session, record_id, user)

        monkeypatch.setattr(SharedPoolAssigner, "_claim", rival_first)
        task = assigner.next_task(session, project_id, alice)
        assert task.id != raced["record"]

    def test_gives_up_after_repeated_races(self, session, project_id, alice, monkeypatch):
        monkeypatch.setattr(SharedPoolAssigner, "_claim", lambda self, session, record_id, user: False)
        with pytest.raises(ConflictError):
            SharedPoolAssigner().next_task(session, project_id, alice)

    def test_cannot_save_someone_elses_record(self, session, project_id, alice, bob):
        assigner = SharedPoolAssigner()
        task = assigner.next_task(session, project_id, alice)
        with pytest.raises(ConflictError):
            assigner.save(session, task.id, bob, _labels(bob.id))
        row = session.execute(select(PoolAssignment)).scalars().one()
        assert row.status == STATUS_PENDING

    def test_save_claims_unclaimed_record(self, session, project_id, bob):
        assigner = SharedPoolAssigner()
        record_id = assigner.next_task(session, project_id, bob).id + 1
        result = assigner.save(session, record_id, bob, _labels(bob.id))
        assert result.status == STATUS_COMPLETED


class TestGetAssigner:
    def test_modes(self):
        assert isinstance(get_assigner("per_user"), PerUserAssigner)
        assert isinstance(get_assigner("shared_pool"), SharedPoolAssigner)

    def test_unknown(self):
        with pytest.raises(ValidationError):
            get_assigner("round_robin")
