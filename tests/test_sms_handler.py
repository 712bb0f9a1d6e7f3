import asyncio

import pytest

from api.models import AccountStatus, TransactionType
from api.prompts import TopicCategory
from api.services.chat import DEFAULT_IMAGE_QUESTION
from api.services.places import PlaceSearchResult
from api.services.weather import WeatherAnswer
from api.sms_handler import detect_language
from conftest import PHONE, SE_NUMBER, US_NUMBER, inbound
from lib.commands import PlaceCategory
from lib.error_handler import AppError
from lib.gps import Coordinates

QUESTION = "How do I build a fire?"
IMAGE_URL = 'https://api.twilio.com/2010-04-01/Accounts/AC1/Messages/MM1/Media/ME1'

def last_sms(mock_sms_service) -> str:
    return mock_sms_service.send_sms.await_args.args[1]

async def test_full_conversation_flow(handler, accounts, credits, sessions, mock_sms_service, mock_chat_service):
    """New user opts in, asks, expands, stops and comes back"""
    await handler.dispatch(inbound("Hello"))
    account = await accounts.get_account(PHONE)
    assert account.status == AccountStatus.PENDING
    mock_sms_service.send_opt_in.assert_awaited_once_with(PHONE, 'en')

    await handler.dispatch(inbound("YES"))
    mock_sms_service.send_activation.assert_awaited_once_with(PHONE, 'en', 3)
    assert await credits.get_balance(PHONE) == 3

    await handler.dispatch(inbound(QUESTION))
    mock_chat_service.generate_response.assert_awaited_once_with(
        QUESTION, [], None, [TopicCategory.OUTDOOR], 'en'
    )
    mock_sms_service.send_sms.assert_awaited_with(PHONE, "Build a fire with dry birch bark.")
    assert await credits.get_balance(PHONE) == 2

    await handler.dispatch(inbound("MORE"))
    mock_chat_service.expand_response.assert_awaited_once_with(
        "Build a fire with dry birch bark.", QUESTION, [TopicCategory.OUTDOOR], 'en'
    )
    mock_sms_service.send_sms.assert_awaited_with(PHONE, "Longer answer about birch bark.")
    assert await credits.get_balance(PHONE) == 1

    context = await sessions.get_context(PHONE)
    assert context.messages == [QUESTION]
    assert context.last_ai_response == "Longer answer about birch bark."

    await handler.dispatch(inbound("STOP"))
    mock_sms_service.send_stop_confirmation.assert_awaited_once_with(PHONE, 'en')
    assert (await accounts.get_account(PHONE)).status == AccountStatus.INACTIVE

    await handler.dispatch(inbound("Hello again"))
    assert mock_sms_service.send_opt_in.await_count == 2

    await handler.dispatch(inbound("yes"))
    mock_sms_service.send_activation.assert_awaited_with(PHONE, 'en', 0)
    assert await credits.get_balance(PHONE) == 1

    descriptions = [t.description for t in await credits.get_transactions(PHONE)]
    assert descriptions == ['Expanded response (MORE)', 'AI conversation', 'Free trial credits']

async def test_signup_bonus_is_logged_as_purchase(handler, credits, make_account):
    await make_account(status=AccountStatus.PENDING, credits=0)

    await handler.dispatch(inbound("ja"))

    transactions = await credits.get_transactions(PHONE)
    assert len(transactions) == 1
    assert transactions[0].type == TransactionType.PURCHASE
    assert transactions[0].credits_delta == 3

def yield_after_reading_user(db, monkeypatch):
    """Let other messages run between reading the account and acting on it"""
    read_user = db.get_user

    async def get_user(phone_number):
        user = await read_user(phone_number)
        await asyncio.sleep(0)
        return user

    monkeypatch.setattr(db, 'get_user', get_user)

async def test_concurrent_confirmations_grant_the_bonus_once(handler, db, credits, mock_sms_service, make_account, monkeypatch):
    await make_account(status=AccountStatus.PENDING, credits=0)
    yield_after_reading_user(db, monkeypatch)

    await asyncio.gather(handler.dispatch(inbound("YES")), handler.dispatch(inbound("yes")))

    assert await credits.get_balance(PHONE) == 3
    assert len(await credits.get_transactions(PHONE)) == 1
    mock_sms_service.send_activation.assert_awaited_once_with(PHONE, 'en', 3)
    mock_sms_service.send_error_message.assert_not_awaited()

async def test_concurrent_first_messages_create_one_account(handler, db, mock_sms_service, monkeypatch):
    yield_after_reading_user(db, monkeypatch)

    await asyncio.gather(handler.dispatch(inbound("Hello")), handler.dispatch(inbound("Hi there")))

    assert list(db.users) == [PHONE]
    assert db.users[PHONE]['status'] == AccountStatus.PENDING.value
    assert mock_sms_service.send_opt_in.await_count == 2
    mock_sms_service.send_error_message.assert_not_awaited()

async def test_inactive_user_without_yes_gets_opt_in(handler, mock_sms_service, mock_chat_service, make_account):
    await make_account(status=AccountStatus.INACTIVE)

    await handler.dispatch(inbound(QUESTION))

    mock_sms_service.send_opt_in.assert_awaited_once_with(PHONE, 'en')
    mock_chat_service.generate_response.assert_not_awaited()

async def test_gps_takes_priority_over_more(handler, sessions, credits, mock_sms_service, mock_chat_service, make_account):
    await make_account()
    await sessions.update_session(PHONE, QUESTION, "Earlier answer.")

    await handler.dispatch(inbound("MORE 59.3293, 18.0686"))

    mock_chat_service.expand_response.assert_not_awaited()
    assert "Position saved!" in last_sms(mock_sms_service)
    assert "59.3293 N, 18.0686 E" in last_sms(mock_sms_service)
    assert await credits.get_balance(PHONE) == 10

    fix = await sessions.get_last_location(PHONE)
    assert fix.coordinates == Coordinates(lat=59.3293, lon=18.0686)

async def test_question_with_decimals_is_answered_not_saved_as_position(handler, sessions, mock_chat_service, make_account):
    await make_account()
    await sessions.save_location(PHONE, 59.3293, 18.0686)

    await handler.dispatch(inbound("Should I mix 1.5, 2.5 parts water to oats?"))

    mock_chat_service.generate_response.assert_awaited_once()
    fix = await sessions.get_last_location(PHONE)
    assert fix.coordinates == Coordinates(lat=59.3293, lon=18.0686)

async def test_gps_does_not_touch_session(handler, sessions, make_account):
    await make_account()
    await sessions.update_session(PHONE, QUESTION, "Earlier answer.")

    await handler.dispatch(inbound("59.3293, 18.0686"))

    context = await sessions.get_context(PHONE)
    assert context.messages == [QUESTION]
    assert context.last_ai_response == "Earlier answer."

async def test_gps_with_weather_keyword_sends_local_forecast(handler, credits, mock_sms_service, mock_weather_service, make_account):
    await make_account()
    mock_weather_service.get_weather_by_coordinates.return_value = "Your position (tomorrow)\n- Clear"

    await handler.dispatch(inbound("59.3293, 18.0686 weather tomorrow"))

    mock_weather_service.get_weather_by_coordinates.assert_awaited_once_with(59.3293, 18.0686, 'en', 1)
    mock_sms_service.send_sms.assert_awaited_once_with(PHONE, "Your position (tomorrow)\n- Clear")
    assert await credits.get_balance(PHONE) == 10

async def test_gps_with_shelter_keyword_lists_cabins(handler, mock_sms_service, make_account):
    await make_account()

    await handler.dispatch(inbound("67.9023, 18.5429 nearest"))

    reply = last_sms(mock_sms_service)
    assert reply.startswith("Nearest cabins:")
    assert "Kebnekaise Fjallstation" in reply

async def test_gps_with_place_category_searches_and_charges(handler, credits, sessions, mock_sms_service, mock_place_service, make_account):
    await make_account()
    origin = Coordinates(lat=59.3293, lon=18.0686)
    mock_place_service.search_nearby.return_value = PlaceSearchResult(PlaceCategory.HOSPITAL, origin, 10.0)
    mock_place_service.format_search_result.return_value = "No hospital found within 10 km."

    await handler.dispatch(inbound("59.3293, 18.0686 hospital"))

    mock_place_service.search_nearby.assert_awaited_once_with(origin, PlaceCategory.HOSPITAL, 10.0, language='en')
    mock_sms_service.send_sms.assert_awaited_once_with(PHONE, "No hospital found within 10 km.")
    assert await credits.get_balance(PHONE) == 9
    assert (await sessions.get_context(PHONE)).last_ai_response == "No hospital found within 10 km."

async def test_more_without_previous_reply(handler, credits, mock_sms_service, mock_chat_service, make_account):
    await make_account()

    await handler.dispatch(inbound("more"))

    mock_chat_service.expand_response.assert_not_awaited()
    mock_sms_service.send_sms.assert_awaited_once_with(
        PHONE, "No previous response to expand. Please ask a question first."
    )
    assert await credits.get_balance(PHONE) == 10

async def test_more_after_session_expired(handler, clock, mock_sms_service, mock_chat_service, make_account):
    await make_account()
    await handler.dispatch(inbound(QUESTION))

    clock.advance(minutes=31)
    await handler.dispatch(inbound("MORE"))

    mock_chat_service.expand_response.assert_not_awaited()
    assert last_sms(mock_sms_service).startswith("No previous response")

async def test_conversation_sends_history_and_last_reply(handler, mock_chat_service, make_account):
    await make_account()
    await handler.dispatch(inbound(QUESTION))

    await handler.dispatch(inbound("What if it rains?"))

    mock_chat_service.generate_response.assert_awaited_with(
        "What if it rains?", [QUESTION], "Build a fire with dry birch bark.", [TopicCategory.OUTDOOR], 'en'
    )

async def test_conversation_uses_selected_categories(handler, mock_chat_service, make_account):
    await make_account(pricing_tier='pro', selected_categories=['cooking', 'health'])

    await handler.dispatch(inbound("Is raw dough safe?"))

    args = mock_chat_service.generate_response.await_args.args
    assert args[3] == [TopicCategory.COOKING, TopicCategory.HEALTH]

async def test_active_agent_overrides_categories(handler, accounts, mock_chat_service, make_account):
    await make_account()
    agent = await accounts.create_agent(PHONE, "Chef", "You are a chef.")
    await accounts.activate_agent(PHONE, agent.id)

    await handler.dispatch(inbound("Dinner ideas?"))

    mock_chat_service.generate_response.assert_not_awaited()
    mock_chat_service.generate_response_with_instructions.assert_awaited_once_with(
        "Dinner ideas?", [], None, "You are a chef.", 'en'
    )

async def test_no_credits_blocks_answer(handler, credits, mock_sms_service, mock_chat_service, make_account):
    await make_account(credits=0)

    await handler.dispatch(inbound(QUESTION))

    mock_chat_service.generate_response.assert_not_awaited()
    mock_sms_service.send_no_credits.assert_awaited_once_with(PHONE, 'en', 0)
    assert await credits.get_transactions(PHONE) == []

async def test_concurrent_messages_never_overdraw(handler, credits, make_account):
    await make_account(credits=1)

    await asyncio.gather(
        handler.dispatch(inbound("First question")),
        handler.dispatch(inbound("Second question"))
    )

    assert await credits.get_balance(PHONE) == 0
    assert len(await credits.get_transactions(PHONE)) == 1

async def test_rate_limit_after_five_messages(handler, credits, mock_sms_service, make_account):
    await make_account()

    for _ in range(6):
        await handler.dispatch(inbound(QUESTION))

    mock_sms_service.send_rate_limited.assert_awaited_once_with(PHONE, 'en', 'minute', 5)
    assert await credits.get_balance(PHONE) == 5

async def test_rate_limit_window_resets(handler, clock, mock_sms_service, mock_chat_service, make_account):
    await make_account(credits=20)
    for _ in range(6):
        await handler.dispatch(inbound(QUESTION))

    clock.advance(seconds=61)
    await handler.dispatch(inbound(QUESTION))

    assert mock_chat_service.generate_response.await_count == 6
    assert mock_sms_service.send_rate_limited.await_count == 1

async def test_image_without_text_uses_default_question(handler, credits, sessions, mock_sms_service, mock_chat_service, make_account):
    await make_account()

    await handler.dispatch(inbound('', media_url=IMAGE_URL, media_type='image/jpeg'))

    mock_chat_service.analyze_image.assert_awaited_once_with(
        IMAGE_URL, DEFAULT_IMAGE_QUESTION, [TopicCategory.OUTDOOR], 'en'
    )
    mock_sms_service.send_sms.assert_awaited_once_with(PHONE, "That is a chanterelle. Safe to eat.")
    assert await credits.get_balance(PHONE) == 9
    assert (await sessions.get_context(PHONE)).messages == [f"[Image] {DEFAULT_IMAGE_QUESTION}"]

async def test_image_with_stop_caption_is_still_analyzed(handler, accounts, mock_chat_service, make_account):
    await make_account()

    await handler.dispatch(inbound('STOP', media_url=IMAGE_URL, media_type='image/png'))

    mock_chat_service.analyze_image.assert_awaited_once()
    assert (await accounts.get_account(PHONE)).status == AccountStatus.ACTIVE

async def test_image_failure_is_not_charged(handler, credits, mock_sms_service, mock_chat_service, make_account):
    await make_account()
    mock_chat_service.analyze_image.side_effect = AppError("vision down", status_code=502)

    await handler.dispatch(inbound("Is this safe?", media_url=IMAGE_URL, media_type='image/jpeg'))

    mock_sms_service.send_sms.assert_awaited_once_with(
        PHONE, "Unable to analyze image. Please try again or send a text question."
    )
    assert await credits.get_balance(PHONE) == 10

async def test_non_image_media_is_treated_as_text(handler, mock_chat_service, make_account):
    await make_account()

    await handler.dispatch(inbound(QUESTION, media_url=IMAGE_URL, media_type='audio/amr'))

    mock_chat_service.analyze_image.assert_not_awaited()
    mock_chat_service.generate_response.assert_awaited_once()

async def test_empty_text_is_ignored(handler, mock_sms_service, mock_chat_service, make_account):
    await make_account()

    await handler.dispatch(inbound("   "))

    mock_chat_service.generate_response.assert_not_awaited()
    mock_sms_service.send_sms.assert_not_awaited()

async def test_help_reports_balance(handler, mock_sms_service, make_account):
    await make_account(credits=7)

    await handler.dispatch(inbound("help"))

    mock_sms_service.send_help.assert_awaited_once_with(PHONE, 'en', 7)

async def test_swedish_number_gets_swedish_replies(handler, accounts, mock_sms_service, make_account):
    await make_account(language='en')

    await handler.dispatch(inbound("hjälp", to=SE_NUMBER))

    mock_sms_service.send_help.assert_awaited_once_with(PHONE, 'sv', 10)
    assert (await accounts.get_account(PHONE)).language == 'sv'

async def test_place_search_without_location(handler, credits, mock_sms_service, mock_place_service, make_account):
    await make_account()

    await handler.dispatch(inbound("find hospital"))

    mock_place_service.search_nearby.assert_not_awaited()
    assert last_sms(mock_sms_service).startswith("To find the nearest hospital")
    assert await credits.get_balance(PHONE) == 10

async def test_place_search_uses_saved_location(handler, sessions, credits, mock_sms_service, mock_place_service, make_account):
    await make_account()
    await sessions.save_location(PHONE, 59.3293, 18.0686)
    origin = Coordinates(lat=59.3293, lon=18.0686)
    mock_place_service.search_nearby.return_value = PlaceSearchResult(PlaceCategory.GAS_STATION, origin, 5.0)
    mock_place_service.format_search_result.return_value = "No gas station found within 5 km."

    await handler.dispatch(inbound("nearest gas station within 5 km"))

    mock_place_service.search_nearby.assert_awaited_once_with(origin, PlaceCategory.GAS_STATION, 5.0, language='en')
    mock_sms_service.send_sms.assert_awaited_once_with(PHONE, "No gas station found within 5 km.")
    assert await credits.get_balance(PHONE) == 9

async def test_where_am_i_with_and_without_fix(handler, sessions, mock_sms_service, make_account):
    await make_account()

    await handler.dispatch(inbound("Where am I?"))
    assert last_sms(mock_sms_service).startswith("No saved location found.")

    await sessions.save_location(PHONE, 59.3293, 18.0686)
    await handler.dispatch(inbound("where am i"))
    assert "https://maps.google.com/?q=59.3293,18.0686" in last_sms(mock_sms_service)

async def test_resolved_weather_query_is_charged(handler, credits, sessions, mock_sms_service, mock_weather_service, mock_chat_service, make_account):
    await make_account()
    mock_weather_service.answer_query.return_value = WeatherAnswer("Umea (tomorrow)\n- Clear", True)

    await handler.dispatch(inbound("Weather in Umea tomorrow?"))

    mock_weather_service.answer_query.assert_awaited_once_with("Weather in Umea tomorrow?", 'en', mock_chat_service)
    mock_sms_service.send_sms.assert_awaited_once_with(PHONE, "Umea (tomorrow)\n- Clear")
    assert await credits.get_balance(PHONE) == 9
    assert (await sessions.get_context(PHONE)).last_ai_response == "Umea (tomorrow)\n- Clear"

async def test_unresolved_weather_query_is_free(handler, credits, mock_sms_service, mock_weather_service, make_account):
    await make_account()
    mock_weather_service.answer_query.return_value = WeatherAnswer("Which location would you like weather for?", False)

    await handler.dispatch(inbound("What's the weather like?"))

    mock_sms_service.send_sms.assert_awaited_once_with(PHONE, "Which location would you like weather for?")
    assert await credits.get_balance(PHONE) == 10

async def test_failure_sends_apology_and_keeps_credits(handler, credits, mock_sms_service, mock_chat_service, make_account):
    await make_account()
    mock_chat_service.generate_response.side_effect = AppError("OpenAI down", status_code=502)

    await handler.dispatch(inbound(QUESTION))

    mock_sms_service.send_error_message.assert_awaited_once_with(
        PHONE, "Sorry, I encountered an error processing your request. Please try again."
    )
    assert await credits.get_balance(PHONE) == 10

async def test_apology_follows_language(handler, mock_sms_service, mock_chat_service, make_account):
    await make_account()
    mock_chat_service.generate_response.side_effect = RuntimeError("boom")

    await handler.dispatch(inbound(QUESTION, to=SE_NUMBER))

    mock_sms_service.send_error_message.assert_awaited_once_with(
        PHONE, "Tyvarr uppstod ett fel nar ditt meddelande behandlades. Forsok igen."
    )

async def test_handle_incoming_message_returns_empty_twiml(handler, accounts, mock_sms_service):
    webhook_data = {
        'From': ['+46 70 123 45 67'],
        'To': [SE_NUMBER],
        'Body': ['  Hej   där '],
        'NumMedia': ['0'],
    }

    twiml = await handler.handle_incoming_message(webhook_data)

    assert '<Response />' in twiml
    account = await accounts.get_account(PHONE)
    assert account.language == 'sv'
    assert account.twilio_number == SE_NUMBER
    mock_sms_service.send_opt_in.assert_awaited_once_with(PHONE, 'sv')

async def test_handle_incoming_message_requires_from_and_to(handler):
    with pytest.raises(AppError) as exc_info:
        await handler.handle_incoming_message({'Body': ['hello'], 'To': [US_NUMBER]})

    assert exc_info.value.status_code == 400

def test_detect_language():
    assert detect_language(SE_NUMBER) == 'sv'
    assert detect_language(US_NUMBER) == 'en'

async def test_handle_incoming_message_rejects_non_numeric_media_count(handler, mock_sms_service):
    webhook_data = {'From': [PHONE], 'To': [US_NUMBER], 'Body': ['hello'], 'NumMedia': ['abc']}

    with pytest.raises(AppError) as exc_info:
        await handler.handle_incoming_message(webhook_data)

    assert exc_info.value.status_code == 400
    mock_sms_service.send_opt_in.assert_not_awaited()
