from lib.sms_text import (
    estimate_sms_segments,
    normalize_phone_number,
    normalize_sms_text,
    sanitize_input,
    truncate_for_sms,
)

def test_normalize_phone_number():
    assert normalize_phone_number('(555) 123-4567') == '+15551234567'
    assert normalize_phone_number('46 70 123 45 67') == '+46701234567'
    assert normalize_phone_number('+46701234567') == '+46701234567'

def test_sanitize_input_collapses_whitespace():
    assert sanitize_input('  where   is\n the cabin  ') == 'where is the cabin'

def test_normalize_sms_text_folds_to_ascii():
    text = "Vädret är “bra” – gå ut 🌞\n\n\n• ta med jacka"
    assert normalize_sms_text(text) == 'Vadret ar "bra" - ga ut\n- ta med jacka'

def test_segment_estimate_boundaries():
    assert estimate_sms_segments('a' * 160) == 1
    assert estimate_sms_segments('a' * 161) == 2
    assert estimate_sms_segments('a' * 306) == 2
    assert estimate_sms_segments('a' * 459) == 3
    assert estimate_sms_segments('a' * 612) == 4
    assert estimate_sms_segments('a' * 613) == 5

def test_truncate_for_sms():
    assert truncate_for_sms('short') == 'short'
    assert len(truncate_for_sms('a' * 2000)) == 1600
