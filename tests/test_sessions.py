from conftest import PHONE

async def test_context_is_empty_without_session(sessions):
    context = await sessions.get_context(PHONE)
    assert context.messages == []
    assert context.last_ai_response is None

async def test_update_creates_session_and_keeps_last_three_messages(sessions):
    for index in range(5):
        await sessions.update_session(PHONE, f"question {index}", f"answer {index}")

    context = await sessions.get_context(PHONE)
    assert context.messages == ["question 2", "question 3", "question 4"]
    assert context.last_ai_response == "answer 4"

async def test_reply_only_update_keeps_message_window(sessions):
    await sessions.update_session(PHONE, "question", "short answer")
    await sessions.update_session(PHONE, None, "long answer")

    context = await sessions.get_context(PHONE)
    assert context.messages == ["question"]
    assert context.last_ai_response == "long answer"

async def test_reply_only_update_without_session_creates_nothing(sessions, db):
    await sessions.update_session(PHONE, None, "orphan answer")

    assert db.sessions == {}

async def test_session_expires_after_thirty_minutes(sessions, clock):
    await sessions.update_session(PHONE, "question", "answer")

    clock.advance(minutes=30)
    assert (await sessions.get_context(PHONE)).messages == ["question"]

    clock.advance(seconds=1)
    context = await sessions.get_context(PHONE)
    assert context.messages == []
    assert context.last_ai_response is None

async def test_update_after_expiry_starts_fresh_session(sessions, clock, db):
    await sessions.update_session(PHONE, "old question", "old answer")
    clock.advance(hours=1)

    await sessions.update_session(PHONE, "new question", "new answer")

    context = await sessions.get_context(PHONE)
    assert context.messages == ["new question"]
    assert len(db.sessions) == 2

async def test_location_fix_expires_after_24_hours(sessions, clock):
    await sessions.save_location(PHONE, 67.9023, 18.5429)

    clock.advance(hours=23, minutes=59)
    fix = await sessions.get_last_location(PHONE)
    assert fix is not None
    assert (fix.lat, fix.lon) == (67.9023, 18.5429)

    clock.advance(minutes=2)
    assert await sessions.get_last_location(PHONE) is None

async def test_location_fix_is_independent_of_session(sessions, clock):
    await sessions.save_location(PHONE, 59.3293, 18.0686)
    clock.advance(hours=2)

    assert await sessions.get_session(PHONE) is None
    assert await sessions.get_last_location(PHONE) is not None

async def test_clear_expired_sessions(sessions, clock, db):
    await sessions.update_session(PHONE, "old", "answer")
    clock.advance(hours=1)
    await sessions.update_session('+15550009999', "recent", "answer")

    deleted = await sessions.clear_expired_sessions()

    assert deleted == 1
    assert [row['phone_number'] for row in db.sessions.values()] == ['+15550009999']
