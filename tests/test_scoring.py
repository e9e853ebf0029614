import pytest
from sqlalchemy import update

from core.config import settings
from core.exceptions import InvalidStateError, NotFoundError
from models.question import Answer
from models.session import ExamSession, MODE_EXAM, MODE_PRACTICE, STATUS_SUBMITTED
from services.scoring_service import ScoringService
from services.user_service import UserService
from conftest import USER_ID


async def answer(service, session_id, bank, question_id, correct=True):
    """Answer one question fully right, or with one wrong option."""
    if bank.qtype[question_id] == "multi":
        chosen = bank.correct_ids(question_id) if correct else [bank.wrong[question_id][0]]
        for answer_id in chosen:
            await service.toggle_multi_choice(session_id, question_id, answer_id)
    else:
        answer_id = bank.correct[question_id][0] if correct else bank.wrong[question_id][0]
        await service.record_single_choice(session_id, question_id, answer_id)


async def session_question_ids(service, session_id):
    return [
        (await service.get_question_at(session_id, index)).question_id
        for index in range(1, settings.TOTAL_QUESTIONS + 1)
    ]


async def test_all_correct_scores_full_marks(db, bank, service):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    for qid in await session_question_ids(service, session.id):
        await answer(service, session.id, bank, qid)

    result = await ScoringService(db).grade(session.id)
    assert result.total == 40
    assert result.correct == 40
    assert result.percent == 100
    assert [(c.category, c.total, c.correct) for c in result.by_category] == [
        (category, quota, quota) for category, quota in settings.CATEGORY_QUOTA.items()
    ]


async def test_no_answers_scores_zero(db, bank, service):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    result = await ScoringService(db).grade(session.id)
    assert (result.total, result.correct, result.percent) == (40, 0, 0)
    assert all(c.correct == 0 for c in result.by_category)


async def test_partial_multi_selection_earns_nothing(db, bank, service):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    qid = next(q for q in await session_question_ids(service, session.id) if bank.qtype[q] == "multi")
    scoring = ScoringService(db)
    first, second = bank.correct_ids(qid)

    await service.toggle_multi_choice(session.id, qid, first)
    assert await scoring.is_question_correct(session.id, qid) is False

    await service.toggle_multi_choice(session.id, qid, second)
    assert await scoring.is_question_correct(session.id, qid) is True

    # A superset is wrong too
    await service.toggle_multi_choice(session.id, qid, bank.wrong[qid][0])
    assert await scoring.is_question_correct(session.id, qid) is False


async def test_question_without_correct_options_is_never_correct(db, bank, service):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    qid = (await service.get_question_at(session.id, 1)).question_id
    await db.execute(update(Answer).where(Answer.question_id == qid).values(is_correct=False))
    await db.commit()

    assert await ScoringService(db).is_question_correct(session.id, qid) is False


@pytest.mark.parametrize("correct, expected", [(28, 70), (27, 68), (1, 3), (39, 98)])
async def test_percent_rounds_half_up(db, bank, service, correct, expected):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    for qid in (await session_question_ids(service, session.id))[:correct]:
        await answer(service, session.id, bank, qid)

    result = await ScoringService(db).grade(session.id)
    assert result.correct == correct
    assert result.percent == expected


async def test_submit_is_idempotent(db, bank, service, clock):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    ids = await session_question_ids(service, session.id)
    for qid in ids[:10]:
        await answer(service, session.id, bank, qid)

    clock.advance(minutes=20)
    first = await service.finalize_and_submit(session.id, pass_percent=70)
    failed_at = await UserService(db).get_last_failure_timestamp(USER_ID)
    assert first.passed is False
    assert failed_at == clock()

    # Later answers and a later clock must not change the stored outcome
    clock.advance(minutes=5)
    await db.execute(update(ExamSession).where(ExamSession.id == session.id).values(status="active"))
    await db.commit()
    for qid in ids[10:]:
        await answer(service, session.id, bank, qid)
    await db.execute(update(ExamSession).where(ExamSession.id == session.id).values(status=STATUS_SUBMITTED))
    await db.commit()

    second = await service.finalize_and_submit(session.id, pass_percent=70)
    assert second == first
    assert await UserService(db).get_last_failure_timestamp(USER_ID) == failed_at

    stored = await service.get_session(session.id)
    assert stored.status == STATUS_SUBMITTED
    assert stored.correct_count == 10
    assert stored.score_percent == 25


async def test_passing_submission_does_not_touch_cooldown(db, bank, service):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    for qid in await session_question_ids(service, session.id):
        await answer(service, session.id, bank, qid)

    submission = await service.finalize_and_submit(session.id)
    assert submission.passed is True
    assert await UserService(db).get_last_failure_timestamp(USER_ID) is None


async def test_practice_and_abandoned_sessions_cannot_be_submitted(db, bank, service):
    practice = await service.create_session(USER_ID, settings.EXAM_ID, MODE_PRACTICE)
    with pytest.raises(InvalidStateError):
        await service.finalize_and_submit(practice.id)

    exam = await service.create_session(USER_ID + 1, settings.EXAM_ID, MODE_EXAM)
    await service.abandon(exam.id)
    with pytest.raises(InvalidStateError):
        await service.finalize_and_submit(exam.id)


async def test_loser_of_concurrent_finalize_gets_invalid_state(db, bank, service):
    session = await service.create_session(USER_ID, settings.EXAM_ID, MODE_EXAM)
    original_grade = service.scoring.grade
    winner = {"result": {"total": 40, "correct": 40, "percent": 100, "by_category": []}, "passed": True}

    async def grade_while_someone_else_submits(session_id):
        result = await original_grade(session_id)
        # Another worker wins the active -> submitted transition mid-grade
        await db.execute(
            update(ExamSession)
            .where(ExamSession.id == session_id)
            .values(status=STATUS_SUBMITTED, result_json=winner)
            .execution_options(synchronize_session=False)
        )
        return result

    service.scoring.grade = grade_while_someone_else_submits
    with pytest.raises(InvalidStateError):
        await service.finalize_and_submit(session.id)

    # The loser wrote nothing: the winner's outcome stands and no cooldown was set
    assert session.id
    stored = await service.get_session(session.id)
    assert stored.result_json == winner
    assert stored.correct_count is None
    assert await UserService(db).get_last_failure_timestamp(USER_ID) is None

    service.scoring.grade = original_grade
    assert (await service.finalize_and_submit(session.id)).passed is True


async def test_grading_an_unknown_session_is_not_found(db, bank):
    scoring = ScoringService(db)
    with pytest.raises(NotFoundError):
        await scoring.grade("does-not-exist")
    with pytest.raises(NotFoundError):
        await scoring.selected_answer_ids("does-not-exist", next(iter(bank.category)))
    with pytest.raises(NotFoundError):
        await scoring.is_question_correct("does-not-exist", next(iter(bank.category)))
