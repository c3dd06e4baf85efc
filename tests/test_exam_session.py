import asyncio

import pytest

from conftest import FakeHintGenerator, record, run
from exam_simulator.models.session_state import ExamStatus
from exam_simulator.services.exam_session import ExamSession, LoadStatus
from exam_simulator.services.extraction import ExamValidationError, ExtractionError
from exam_simulator.services.persistence import InMemoryStore, JsonFileStore


def started(session, sections=("A", "B")):
    for section in sections:
        run(session.load_section(section))
    session.start()
    return session


# ── Setup ────────────────────────────────────────────────────────────────────

def test_new_session_is_empty():
    session = ExamSession()
    assert session.status is ExamStatus.EMPTY
    assert session.current_question_index == -1
    assert session.results().total_questions == 0


def test_set_metadata_moves_to_first_section(make_session):
    session = make_session()
    assert session.status is ExamStatus.METADATA_SET
    assert session.current_section == "A"
    assert session.current_question_index == -1


def test_set_metadata_accepts_dict_and_rejects_invalid(make_session):
    session = make_session()
    assert session.set_metadata({"exam_name": "X", "duration": "30 min", "sections": ["S"]})
    assert session.exam_info.sections == ["S"]

    with pytest.raises(ExamValidationError):
        session.set_metadata({"exam_name": "", "duration": "30 min"})
    assert session.exam_info.exam_name == "X"


def test_set_metadata_ignored_after_start(make_session, exam_info):
    session = started(make_session())
    assert session.set_metadata(exam_info.model_copy(update={"exam_name": "Other"})) is False
    assert session.exam_info.exam_name == "Sample Exam"


def test_set_pdf_text_resets_everything(make_session):
    session = started(make_session())
    session.set_pdf_text("new text")
    assert session.status is ExamStatus.EMPTY
    assert session.questions == []
    assert session.pdf_text == "new text"


# ── Loading ──────────────────────────────────────────────────────────────────

def test_load_section_commits_questions_and_answer_stubs(make_session):
    session = make_session()
    result = run(session.load_section("A"))

    assert result.status is LoadStatus.LOADED
    assert result.question_count == 2
    assert session.sections_loaded == ["A"]
    # first question of the current section gets selected
    assert session.current_question_index == 0


def test_answers_stay_paired_with_questions_across_loads(make_session):
    session = make_session()
    run(session.load_section("B"))
    run(session.load_section("A"))

    ids = [q.id for q in session.questions]
    assert len(session.user_answers) == len(session.questions) == 3
    assert {a.question_id for a in session.user_answers} == set(ids)


def test_second_load_of_same_section_is_a_no_op(make_session, loader):
    session = make_session()
    run(session.load_section("A"))
    ids = [q.id for q in session.questions]

    result = run(session.load_section("A"))

    assert result.status is LoadStatus.ALREADY_LOADED
    assert result.ok
    assert loader.calls == ["A"]
    assert [q.id for q in session.questions] == ids
    assert len(session.user_answers) == 2


def test_section_order_wins_over_load_order(make_session):
    session = make_session()
    run(session.load_section("B"))
    run(session.load_section("A"))

    order = [(q.section, q.original_pdf_question_number) for q in session.questions]
    assert order == [("A", "1"), ("A", "2"), ("B", "1")]


def test_current_question_is_kept_when_earlier_section_loads(make_session):
    session = make_session()
    run(session.load_section("B"))
    run(session.navigate_to_section("B"))
    current = session.current_question.id

    run(session.load_section("A"))

    assert session.current_question.id == current
    assert session.current_question_index == 2


def test_unknown_section_raises(make_session):
    session = make_session()
    with pytest.raises(ExamValidationError):
        run(session.load_section("Z"))
    with pytest.raises(ExamValidationError):
        run(session.navigate_to_section("Z"))


def test_load_without_loader_or_text_raises(exam_info):
    session = ExamSession()
    session.set_metadata(exam_info)
    with pytest.raises(ExamValidationError):
        run(session.load_section("A"))


def test_failed_load_leaves_state_untouched(make_session, loader):
    loader.error = ExtractionError("service unavailable")
    session = make_session()

    result = run(session.load_section("A"))

    assert result.status is LoadStatus.FAILED
    assert not result.ok
    assert "service unavailable" in result.error
    assert session.sections_loaded == []
    assert session.questions == []


def test_unexpected_loader_error_is_reported_as_failed(make_session, loader):
    loader.error = KeyError("boom")
    result = run(make_session().load_section("A"))
    assert result.status is LoadStatus.FAILED
    assert "KeyError" in result.error


def test_empty_section_loads_as_empty(make_session, loader):
    loader.records_by_section["B"] = []
    session = make_session()
    result = run(session.load_section("B"))
    assert result.status is LoadStatus.EMPTY
    assert session.sections_loaded == ["B"]


def test_concurrent_loads_of_same_section_call_loader_once(make_session, loader):
    session = make_session()

    async def scenario():
        loader.gate = asyncio.Event()
        first = asyncio.create_task(session.load_section("A"))
        await asyncio.sleep(0)
        assert session.is_loading("A")
        second = await session.load_section("A")
        loader.gate.set()
        return await first, second

    first, second = run(scenario())

    assert second.status is LoadStatus.IN_PROGRESS
    assert first.status is LoadStatus.LOADED
    assert loader.calls == ["A"]
    assert len(session.questions) == 2
    assert not session.is_loading("A")


def test_different_sections_load_concurrently(make_session, loader):
    session = make_session()

    async def scenario():
        loader.gate = asyncio.Event()
        tasks = [asyncio.create_task(session.load_section(s)) for s in ("B", "A")]
        await asyncio.sleep(0)
        loader.gate.set()
        return await asyncio.gather(*tasks)

    results = run(scenario())

    assert [r.status for r in results] == [LoadStatus.LOADED, LoadStatus.LOADED]
    assert [q.section for q in session.questions] == ["A", "A", "B"]


def test_load_finishing_after_metadata_change_is_discarded(make_session, loader, exam_info):
    session = make_session()

    async def scenario():
        loader.gate = asyncio.Event()
        task = asyncio.create_task(session.load_section("A"))
        await asyncio.sleep(0)
        session.set_metadata(exam_info)
        loader.gate.set()
        return await task

    result = run(scenario())

    assert result.status is LoadStatus.DISCARDED
    assert session.questions == []
    assert session.sections_loaded == []
    assert not session.is_loading("A")


# ── Start / answer / navigate ────────────────────────────────────────────────

def test_start_requires_first_section_loaded(make_session):
    session = make_session()
    run(session.load_section("B"))
    with pytest.raises(ExamValidationError):
        session.start()
    assert not session.is_started


def test_start_requires_questions(make_session, loader):
    loader.records_by_section["A"] = []
    session = make_session()
    run(session.load_section("A"))
    with pytest.raises(ExamValidationError):
        session.start()


def test_start_sets_running_state(make_session, clock):
    session = make_session()
    run(session.load_section("A"))

    assert session.start() is True
    assert session.status is ExamStatus.RUNNING
    assert session.start_time == clock.now
    assert session.current_question_index == 0
    assert session.current_section == "A"
    assert session.start() is False


def test_answer_records_correctness(make_session):
    session = started(make_session())
    first, second = session.questions[0], session.questions[1]

    assert session.answer(first.id, "Alpha")
    assert session.answer(second.id, "Beta")

    assert session.answer_for(first.id).is_correct is True
    assert session.answer_for(second.id).is_correct is False
    assert session.unattempted_count() == 1


def test_skip_clears_selection(make_session):
    session = started(make_session())
    qid = session.questions[0].id
    session.answer(qid, "Alpha")

    assert session.skip(qid)
    answer = session.answer_for(qid)
    assert answer.selected_option is None
    assert answer.is_correct is None


def test_answer_outside_options_raises(make_session):
    session = started(make_session())
    qid = session.questions[0].id
    with pytest.raises(ExamValidationError):
        session.answer(qid, "Delta")
    assert session.answer_for(qid).selected_option is None


def test_answer_before_start_or_unknown_id_is_ignored(make_session):
    session = make_session()
    run(session.load_section("A"))
    assert session.answer(session.questions[0].id, "Alpha") is False
    session.start()
    assert session.answer("missing", "Alpha") is False


def test_navigation_bounds(make_session):
    session = started(make_session())

    assert session.navigate_to_question(2)
    assert session.current_section == "B"
    assert session.navigate_to_question(3) is False
    assert session.navigate_to_question(-1) is False
    assert session.current_question_index == 2

    assert session.next_question() is False
    assert session.previous_question()
    assert session.current_question_index == 1


def test_time_is_charged_to_the_question_on_screen(make_session, clock):
    session = started(make_session())
    first = session.questions[0].id

    clock.advance(30)
    session.next_question()
    clock.advance(12)
    session.previous_question()

    assert session.answer_for(first).time_taken == 30
    assert session.answer_for(session.questions[1].id).time_taken == 12


def test_navigate_to_section_loads_and_jumps(make_session, loader):
    session = make_session()
    run(session.load_section("A"))
    session.start()

    result = run(session.navigate_to_section("B"))

    assert result.status is LoadStatus.LOADED
    assert loader.calls == ["A", "B"]
    assert session.current_section == "B"
    assert session.current_question.section == "B"


def test_navigate_to_empty_section(make_session, loader):
    loader.records_by_section["B"] = []
    session = make_session()
    run(session.load_section("A"))
    session.start()

    result = run(session.navigate_to_section("B"))

    assert result.status is LoadStatus.EMPTY
    assert session.current_section == "B"
    assert session.current_question_index == -1
    assert session.current_question is None


def test_navigate_to_section_propagates_failure(make_session, loader):
    session = make_session()
    run(session.load_section("A"))
    session.start()
    loader.error = ExtractionError("down")

    result = run(session.navigate_to_section("B"))

    assert result.status is LoadStatus.FAILED
    assert session.current_section == "A"


def test_navigate_to_section_while_it_is_loading_stays_put(make_session, loader):
    session = make_session()
    run(session.load_section("A"))
    session.start()
    session.navigate_to_question(1)
    loader.calls = []

    async def scenario():
        loader.gate = asyncio.Event()
        load = asyncio.create_task(session.load_section("B"))
        await asyncio.sleep(0)
        result = await session.navigate_to_section("B")
        position = (session.current_section, session.current_question_index)
        loader.gate.set()
        return result, position, await load

    result, position, load = run(scenario())

    assert result.status is LoadStatus.IN_PROGRESS
    assert position == ("A", 1)
    assert load.status is LoadStatus.LOADED
    assert loader.calls == ["B"]
    assert session.current_section == "A"
    assert session.current_question_index == 1


def test_navigate_to_section_while_paused_loads_without_moving(make_session):
    session = make_session()
    run(session.load_section("A"))
    session.start()
    session.answer(session.questions[0].id, "Alpha")
    session.pause()

    result = run(session.navigate_to_section("B"))

    assert result.status is LoadStatus.IGNORED
    assert session.bank.is_loaded("B")
    assert session.current_section == "A"
    assert session.current_question_index == 0


def test_prefetch_loads_the_next_section(make_session, loader):
    session = make_session()
    run(session.load_section("A"))
    session.start()

    assert session.next_unloaded_section() == "B"
    result = run(session.prefetch_next_section())

    assert result.status is LoadStatus.LOADED
    assert session.next_unloaded_section() is None
    assert run(session.prefetch_next_section()) is None
    assert session.current_question_index == 0


# ── Pause / resume ───────────────────────────────────────────────────────────

def test_pause_defers_unattempted_question_within_its_section(make_session):
    session = started(make_session())
    q1, q2, q3 = session.questions

    assert session.pause()

    assert [q.id for q in session.questions] == [q2.id, q1.id, q3.id]
    assert session.is_paused
    assert session.current_question_index == 0
    assert session.current_question.section == session.current_section == "A"


def test_pause_keeps_order_when_current_question_is_answered(make_session):
    session = started(make_session())
    ids = [q.id for q in session.questions]
    session.answer(ids[0], "Beta")

    assert session.pause()

    assert [q.id for q in session.questions] == ids
    assert session.current_question_index == 0
    assert session.status is ExamStatus.PAUSED


def test_pause_in_single_question_section_moves_it_to_the_end(make_session):
    session = started(make_session())
    q1, q2, q3 = session.questions
    session.navigate_to_question(2)

    session.pause()

    assert [q.id for q in session.questions] == [q1.id, q2.id, q3.id]
    assert session.current_question_index == 2
    assert session.current_section == "B"


def test_pause_on_last_question_keeps_a_valid_index(make_session, loader):
    loader.records_by_section["B"] = []
    session = started(make_session(), sections=("A",))
    session.navigate_to_question(1)

    session.pause()

    assert session.current_question_index == 1
    assert session.current_section == "A"


def test_paused_session_blocks_answers_and_navigation(make_session):
    session = started(make_session())
    session.pause()
    qid = session.questions[0].id

    assert session.answer(qid, "Alpha") is False
    assert session.navigate_to_question(1) is False
    assert session.pause() is False

    assert session.resume()
    assert session.answer(qid, "Alpha")
    assert session.resume() is False


def test_pause_and_resume_before_start_are_no_ops(make_session):
    session = make_session()
    assert session.pause() is False
    assert session.resume() is False
    assert session.submit() is False


# ── Submit / reset ───────────────────────────────────────────────────────────

def test_finished_session_ignores_further_mutation(make_session, clock):
    session = started(make_session())
    first = session.questions[0].id
    session.answer(first, "Alpha")
    clock.advance(90)
    assert session.submit()

    snapshot = session.to_snapshot()
    clock.advance(10)

    assert session.answer(first, "Beta") is False
    assert session.pause() is False
    assert session.navigate_to_question(1) is False
    assert session.resume() is False
    assert session.submit() is False
    assert run(session.load_section("A")).status is LoadStatus.ALREADY_LOADED
    assert session.to_snapshot() == snapshot
    assert session.elapsed_seconds() == 90


def test_results_after_submit(make_session, clock):
    session = started(make_session())
    q1, q2, q3 = session.questions
    session.answer(q1.id, "Alpha")
    session.answer(q2.id, "Gamma")
    clock.advance(61.7)
    session.submit()

    results = session.results()

    assert results.correct_answers == 1
    assert results.wrong_answers == 1
    assert results.skipped_answers == 1
    assert results.total_time_taken == 61
    assert [s.name for s in results.section_summaries] == ["A", "B"]


def test_reset_clears_state_and_store(make_session):
    store = InMemoryStore()
    session = started(make_session(store=store))
    assert store.load() is not None

    session.reset()

    assert session.status is ExamStatus.EMPTY
    assert session.questions == []
    assert store.load() is None


# ── Progress helpers ─────────────────────────────────────────────────────────

def test_estimated_total_questions(make_session, exam_info):
    session = make_session()
    assert session.estimated_total_questions() == 20
    run(session.load_section("A"))
    assert session.estimated_total_questions() == 12

    session.set_metadata(exam_info.model_copy(update={"total_questions": 50}))
    assert session.estimated_total_questions() == 50


def test_remaining_seconds(make_session, clock):
    session = started(make_session())
    clock.advance(600)
    assert session.elapsed_seconds() == 600
    assert session.remaining_seconds() == 3000


# ── Hints ────────────────────────────────────────────────────────────────────

def test_hint_levels_cap_at_three(make_session):
    hints = FakeHintGenerator()
    session = started(make_session(hint_generator=hints))
    qid = session.questions[0].id

    texts = [run(session.request_hint(qid)) for _ in range(4)]

    assert texts == ["hint level 1", "hint level 2", "hint level 3", None]
    assert [h.level for h in session.answer_for(qid).hints_taken] == [1, 2, 3]
    assert len(hints.calls) == 3
    assert hints.calls[0][2].startswith("--- Page 1 ---")


def test_hint_failure_returns_none(make_session):
    session = started(make_session(hint_generator=FakeHintGenerator(fail=True)))
    qid = session.questions[0].id
    assert run(session.request_hint(qid)) is None
    assert session.answer_for(qid).hints_taken == []


def test_hint_only_while_running(make_session):
    session = started(make_session(hint_generator=FakeHintGenerator()))
    session.pause()
    assert run(session.request_hint(session.questions[0].id)) is None


def test_hint_for_unknown_question_raises(make_session):
    session = started(make_session(hint_generator=FakeHintGenerator()))
    with pytest.raises(ExamValidationError):
        run(session.request_hint("missing"))


# ── Snapshot / restore ───────────────────────────────────────────────────────

def test_snapshot_round_trip_resumes_at_same_question(make_session, tmp_path, loader, clock):
    store = JsonFileStore(str(tmp_path / "snapshot.json"))
    session = started(make_session(store=store))
    session.navigate_to_question(1)
    session.answer(session.questions[1].id, "Alpha")
    current = session.current_question.id

    restored = ExamSession(loader=loader, store=store, clock=clock)
    assert restored.load_from_store()

    assert restored.status is ExamStatus.RUNNING
    assert restored.current_question.id == current
    assert restored.current_section == "A"
    assert restored.answer_for(current).selected_option == "Alpha"
    assert [q.id for q in restored.questions] == [q.id for q in session.questions]
    assert restored.sections_loaded == ["A", "B"]


def test_restore_keeps_paused_flag(make_session):
    store = InMemoryStore()
    session = started(make_session(store=store))
    session.pause()

    restored = ExamSession(store=store)
    assert restored.load_from_store()
    assert restored.status is ExamStatus.PAUSED


def test_restore_rebuilds_missing_answer_stubs(make_session):
    session = started(make_session())
    data = session.to_snapshot().model_dump(mode="json")
    data["user_answers"] = data["user_answers"][:1]

    restored = ExamSession()
    assert restored.restore(data)
    assert len(restored.user_answers) == 3


def test_restore_with_invalid_index_goes_to_first_question(make_session):
    session = started(make_session())
    data = session.to_snapshot().model_dump(mode="json")
    data["current_question_index"] = 99

    restored = ExamSession()
    assert restored.restore(data)
    assert restored.current_question_index == 0
    assert restored.current_section == "A"


def test_restore_rejects_snapshot_without_text():
    store = InMemoryStore()
    store.save({"pdf_text": None, "questions": []})

    session = ExamSession(store=store)

    assert session.load_from_store() is False
    assert store.load() is None


def test_restore_rejects_invalid_snapshot():
    store = InMemoryStore()
    store.save({"pdf_text": "x", "current_question_index": "nope"})

    assert ExamSession(store=store).load_from_store() is False
    assert store.load() is None


def test_restore_drops_undeclared_loaded_sections(make_session):
    session = make_session()
    run(session.load_section("A"))
    data = session.to_snapshot().model_dump(mode="json")
    data["sections_loaded"] = ["A", "Z"]

    restored = ExamSession()
    assert restored.restore(data)
    assert restored.sections_loaded == ["A"]
    assert restored.status is ExamStatus.METADATA_SET


def test_every_mutation_is_persisted(make_session):
    store = InMemoryStore()
    session = make_session(store=store)
    run(session.load_section("A"))
    session.start()
    session.answer(session.questions[0].id, "Beta")

    saved = store.load()
    assert saved["start_time"] is not None
    assert saved["user_answers"][0]["selected_option"] == "Beta"


def test_records_for_other_sections_are_dropped(make_session, loader):
    loader.records_by_section["A"].append(record("stray", "B", "9"))
    session = make_session()
    run(session.load_section("A"))
    assert [q.section for q in session.questions] == ["A", "A"]
