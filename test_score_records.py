import contextlib

import pytest

import config
import result_locks
import score_records as sr
from actors import Actor
from errors import (
    AuthenticationRequired,
    AuthorizationError,
    PartialSaveError,
    StoreUnavailableError,
    ValidationError,
)

KEY = result_locks.LockKey(5, "2024-2025", "First Term", "final")


def test_save_recomputes_totals_from_components(store, admin, make_row):
    saved = sr.save_scores([make_row(totalScore=10, maxScore=10, percentage=100)], admin)

    assert len(saved) == 1
    assert saved[0]["totalScore"] == 73.0
    assert saved[0]["maxScore"] == 80.0
    assert saved[0]["percentage"] == 91.3
    assert store.records["rec-1"]["percentage"] == 91.3


def test_save_normalises_vocabulary(store, admin, make_row):
    saved = sr.save_scores([make_row(examType="FINAL", term="first", classId=5)], admin)
    assert (saved[0]["examType"], saved[0]["term"], saved[0]["classId"]) == ("final", "First Term", "5")


def test_validation_reports_field_level_errors_and_writes_nothing(store, admin, make_row):
    rows = [
        make_row(id="a"),
        make_row(id="", studentId="x", examType="quiz", totalScore="lots"),
        make_row(id="a", components="oops"),
    ]
    with pytest.raises(ValidationError) as exc:
        sr.save_scores(rows, admin)

    fields = exc.value.fields
    assert {"rows[1].id", "rows[1].studentId", "rows[1].examType", "rows[1].totalScore"} <= set(fields)
    assert "rows[2].id" in fields
    assert "rows[2].components" in fields
    assert store.write_calls == []


def test_duplicate_component_ids_are_rejected(store, admin, make_row):
    row = make_row(components=[{"componentId": "ca1", "score": 1}, {"componentId": "CA1", "score": 2}])
    with pytest.raises(ValidationError) as exc:
        sr.save_scores([row], admin)
    assert "rows[0].components" in exc.value.fields


def test_empty_batch_is_invalid(store, admin):
    with pytest.raises(ValidationError):
        sr.save_scores([], admin)


def test_teacher_outside_assigned_class_is_rejected(store, teacher, make_row):
    rows = [make_row(id="ok"), make_row(id="other-class", classId="6", className="JSS2")]
    with pytest.raises(AuthorizationError):
        sr.save_scores(rows, teacher)
    assert store.write_calls == []


def test_teacher_outside_assigned_subject_is_rejected(store, teacher, make_row):
    with pytest.raises(AuthorizationError):
        sr.save_scores([make_row(subject="Physics")], teacher)
    assert store.write_calls == []


def test_teacher_subject_match_ignores_case_and_whitespace(store, teacher, make_row):
    saved = sr.save_scores([make_row(subject="  MATHEMATICS ")], teacher)
    assert saved[0]["subject"] == "MATHEMATICS"


@pytest.mark.parametrize(
    "actor",
    [
        Actor(user_id="parent-1", role="parent", student_ids=frozenset({11})),
        Actor(user_id="student-1", role="student", student_ids=frozenset({11})),
        Actor(user_id="teacher-2", role="teacher", allowed_class_ids=frozenset({"5"}), allowed_subject_names=frozenset({"mathematics"})),
        Actor(user_id="teacher-3", role="teacher", teacher_id=3),
    ],
)
def test_actors_without_write_rights_are_rejected(store, make_row, actor):
    with pytest.raises(AuthorizationError):
        sr.save_scores([make_row()], actor)
    assert store.write_calls == []


def test_anonymous_callers_must_authenticate(store, make_row):
    with pytest.raises(AuthenticationRequired):
        sr.save_scores([make_row()], Actor())
    with pytest.raises(AuthenticationRequired):
        sr.list_scores({}, Actor())


def test_published_group_blocks_teacher_until_override_is_granted(store, admin, teacher, make_row):
    row = make_row(classId="5", sessionId="2024-2025", term="FIRST", examType="FINAL")
    assert sr.save_scores([row], teacher)

    result_locks.mutate_lock("lock", result_locks.build_lock_key(5, "2024-2025", "FIRST", "FINAL"), admin)
    with pytest.raises(AuthorizationError):
        sr.save_scores([row], teacher)

    result_locks.mutate_lock("grant", KEY, admin, teacher_id=teacher.teacher_id)
    assert sr.save_scores([row], teacher)[0]["id"] == "rec-1"

    result_locks.mutate_lock("revoke", KEY, admin, teacher_id=teacher.teacher_id)
    with pytest.raises(AuthorizationError):
        sr.save_scores([row], teacher)

    assert sr.save_scores([row], admin)


def test_one_locked_row_rejects_the_whole_batch(store, admin, teacher, make_row):
    result_locks.mutate_lock("lock", KEY, admin)
    rows = [make_row(id="draft", examType="midterm"), make_row(id="published")]
    with pytest.raises(AuthorizationError):
        sr.save_scores(rows, teacher)
    assert store.records == {}


def test_writes_go_out_in_fixed_size_chunks(store, admin, make_row, monkeypatch):
    monkeypatch.setattr(config, "SCORE_SAVE_CHUNK_SIZE", 20)
    rows = [make_row(id=f"rec-{i}", studentId=100 + i) for i in range(45)]
    saved = sr.save_scores(rows, admin)

    assert [len(call) for call in store.write_calls] == [20, 20, 5]
    assert [r["id"] for r in saved] == [f"rec-{i}" for i in range(45)]


def test_failed_chunk_keeps_earlier_chunks_and_reports_the_rest(store, admin, make_row):
    rows = [make_row(id=f"rec-{i}", studentId=100 + i) for i in range(45)]
    store.fail_on_chunk = 1

    with pytest.raises(PartialSaveError) as exc:
        sr.save_scores(rows, admin, chunk_size=20)

    assert exc.value.committed_ids == [f"rec-{i}" for i in range(20)]
    assert exc.value.failed_ids == [f"rec-{i}" for i in range(20, 45)]
    assert exc.value.status_code == 503
    assert sorted(store.records) == sorted(f"rec-{i}" for i in range(20))


def test_failure_in_first_chunk_is_store_unavailable(store, admin, make_row):
    store.fail_on_chunk = 0
    with pytest.raises(StoreUnavailableError) as exc:
        sr.save_scores([make_row()], admin)
    assert not isinstance(exc.value, PartialSaveError)


def test_saved_batch_lists_back_unchanged(store, admin, make_row):
    rows = [
        make_row(id=f"rec-{i}", studentId=200 + i, components=[
            {"componentId": "ca1", "label": "CA1", "score": i, "maxScore": 20},
            {"componentId": "exam", "label": "Exam", "score": 40 + i, "maxScore": 60},
        ])
        for i in range(5)
    ]
    sr.save_scores(rows, admin)
    sr.save_scores([make_row(id="other", sessionId="2023-2024")], admin)

    listed = sr.list_scores({"classId": "5", "sessionId": "2024-2025", "term": "First Term", "examType": "final"}, admin)

    assert sorted(r["id"] for r in listed) == [f"rec-{i}" for i in range(5)]
    by_id = {r["id"]: r for r in listed}
    for row in rows:
        assert [(c["componentId"], c["score"], c["maxScore"]) for c in by_id[row["id"]]["components"]] == [
            (c["componentId"], float(c["score"]), float(c["maxScore"])) for c in row["components"]
        ]


def test_list_is_most_recent_first_and_capped(store, admin, make_row, monkeypatch):
    for i in range(5):
        sr.save_scores([make_row(id=f"rec-{i}")], admin)
    monkeypatch.setattr(config, "SCORE_LIST_MAX_ROWS", 3)

    listed = sr.list_scores({}, admin, limit=50)
    assert [r["id"] for r in listed] == ["rec-4", "rec-3", "rec-2"]
    assert [r["id"] for r in sr.list_scores({}, admin, limit=1)] == ["rec-4"]


def test_list_rejects_bad_filters(store, admin):
    with pytest.raises(ValidationError) as exc:
        sr.list_scores({"term": "fourth", "examType": "quiz"}, admin)
    assert set(exc.value.fields) == {"term", "examType"}


def test_teacher_reads_are_scoped_to_assignments(store, admin, teacher, make_row):
    sr.save_scores([
        make_row(id="own"),
        make_row(id="other-class", classId="6", className="JSS2"),
        make_row(id="other-subject", subject="Physics"),
    ], admin)

    assert [r["id"] for r in sr.list_scores({}, teacher)] == ["own"]
    with pytest.raises(AuthorizationError):
        sr.list_scores({"classId": "6"}, teacher)
    with pytest.raises(AuthorizationError):
        sr.list_scores({"subject": "Physics"}, teacher)


def test_teacher_without_subjects_reads_by_class_only(store, admin, make_row):
    sr.save_scores([make_row(id="maths"), make_row(id="physics", subject="Physics")], admin)
    class_only = Actor(user_id="t-9", role="teacher", teacher_id=9, allowed_class_ids=frozenset({"5"}))

    assert sorted(r["id"] for r in sr.list_scores({}, class_only)) == ["maths", "physics"]
    assert sr.list_scores({}, Actor(user_id="t-10", role="teacher", teacher_id=10)) == []


def test_viewers_only_see_their_published_results(store, admin, make_row):
    parent = Actor(user_id="parent-1", role="parent", student_ids=frozenset({11}))
    sr.save_scores([
        make_row(id="child-final"),
        make_row(id="child-midterm", examType="midterm"),
        make_row(id="someone-else", studentId=12, studentName="Bola"),
        make_row(id="no-lock-identity", classId="JSS1-A"),
    ], admin)

    assert sr.list_scores({}, parent) == []

    result_locks.mutate_lock("lock", KEY, admin)
    assert [r["id"] for r in sr.list_scores({}, parent)] == ["child-final"]

    result_locks.mutate_lock("unlock", KEY, admin)
    assert sr.list_scores({}, parent) == []
    assert sr.list_scores({}, Actor(user_id="parent-2", role="parent")) == []


def test_viewer_cap_counts_only_published_rows(store, admin, make_row, monkeypatch):
    parent = Actor(user_id="parent-1", role="parent", student_ids=frozenset({11}))
    sr.save_scores([make_row(id="maths-final"), make_row(id="english-final", subject="English")], admin)
    sr.save_scores([
        make_row(id="draft-maths", classId="6", className="JSS2"),
        make_row(id="draft-english", classId="6", className="JSS2", subject="English"),
    ], admin)
    result_locks.mutate_lock("lock", KEY, admin)
    monkeypatch.setattr(config, "SCORE_LIST_MAX_ROWS", 2)

    assert [r["id"] for r in sr.list_scores({}, parent)] == ["english-final", "maths-final"]
    assert [r["id"] for r in sr.list_scores({}, admin)] == ["draft-english", "draft-maths"]


def test_published_filter_is_applied_in_sql_before_the_limit(monkeypatch):
    executed = []

    class FakeCursor:
        def fetchall(self):
            return []

    class FakeConn:
        def cursor(self):
            return FakeCursor()

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn()

    monkeypatch.setattr(sr, "db_connection", fake_db_connection)
    monkeypatch.setattr(sr, "set_statement_timeout", lambda cursor, timeout_ms: None)
    monkeypatch.setattr(sr, "db_execute", lambda _c, query, params=None: executed.append((query, params)))

    assert sr.query_score_records({"sessionId": "2024-2025"}, student_ids={11}, limit=2, published_only=True) == []
    query, params = executed[0]
    assert "EXISTS" in query and "rl.is_locked" in query
    assert query.index("EXISTS") < query.index("ORDER BY") < query.index("LIMIT")
    assert params == ("2024-2025", [11], 2)

    sr.query_score_records({}, limit=2)
    assert "result_locks" not in executed[1][0]


def test_row_to_record_normalises_stored_components():
    record = sr.row_to_record({
        "id": "rec-1",
        "student_id": 11,
        "student_name": "Ada Obi",
        "class_id": "5",
        "class_name": "JSS1",
        "subject": "Mathematics",
        "exam_type": "final",
        "term": "First Term",
        "session_id": "2024-2025",
        "components": '[{"componentId": "ca1", "score": "x"}, {"label": "Exam", "score": 50, "maxScore": "60"}]',
        "total_score": 50.0,
        "max_score": None,
        "percentage": None,
        "updated_at": None,
    })
    assert record["components"] == [
        {"componentId": "ca1", "label": "ca1", "score": 0.0, "maxScore": None},
        {"componentId": "Exam", "label": "Exam", "score": 50.0, "maxScore": 60.0},
    ]
    assert record["studentId"] == 11 and record["updatedAt"] is None


def test_write_chunk_upserts_with_one_statement(monkeypatch, make_row):
    calls = {}
    commits = []

    class FakeConn:
        def cursor(self):
            return "cursor"

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        commits.append(commit)
        yield FakeConn()

    def fake_execute_values(cursor, sql, argslist, template=None, page_size=100, fetch=False):
        calls.update(sql=sql, argslist=argslist, template=template, page_size=page_size, fetch=fetch)
        return [
            {
                "id": args[0], "student_id": args[1], "student_name": args[2], "class_id": args[3],
                "class_name": args[4], "subject": args[5], "exam_type": args[6], "term": args[7],
                "session_id": args[8], "components": args[9], "total_score": args[10],
                "max_score": args[11], "percentage": args[12], "updated_at": None,
            }
            for args in reversed(argslist)
        ]

    monkeypatch.setattr(sr, "db_connection", fake_db_connection)
    monkeypatch.setattr(sr, "execute_values", fake_execute_values)

    chunk = sr.validate_score_rows([make_row(id="a"), make_row(id="b", studentId=12)])
    saved = sr._write_chunk(chunk)

    assert commits == [True]
    assert "ON CONFLICT (id) DO UPDATE" in calls["sql"]
    assert calls["fetch"] is True and calls["page_size"] == 2
    assert "CURRENT_TIMESTAMP" in calls["template"]
    assert [r["id"] for r in saved] == ["a", "b"]
    assert saved[0]["components"][0]["componentId"] == "ca1"


def test_warmup_is_bounded_and_non_blocking(monkeypatch, make_row):
    submitted = []

    class FakePool:
        def submit(self, fn, *args):
            submitted.append((fn, args))
            return object()

    monkeypatch.setattr(config, "RESULTS_WARMUP_ENABLED", True)
    monkeypatch.setattr(config, "RESULTS_WARMUP_MAX_CALLS", 2)
    monkeypatch.setattr(sr, "_get_warmup_pool", lambda: FakePool())

    records = sr.validate_score_rows([
        make_row(id="a"),
        make_row(id="b", classId="6", className="JSS2"),
        make_row(id="c", classId="7", className="JSS3"),
    ])
    futures = sr.schedule_warmup(records)

    assert len(futures) == 2
    assert [fn for fn, _args in submitted] == [sr._warm_group, sr._warm_group]


def test_warmup_failures_are_only_logged(monkeypatch):
    def failing_query(*args, **kwargs):
        raise StoreUnavailableError()

    monkeypatch.setattr(sr, "query_score_records", failing_query)
    sr._warm_group({"classId": "5", "sessionId": "2024-2025", "term": "First Term", "examType": "final"})
