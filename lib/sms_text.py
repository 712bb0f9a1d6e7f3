"""Text helpers for the SMS channel.

Replies are folded down to plain 7-bit ASCII before they are sent so that
carriers bill them as GSM-7 rather than UCS-2 segments.
"""
import math
import re

_EMOJI = re.compile(
    '[\U0001F300-\U0001FAFF\U0001F600-\U0001F64F\U0001F680-\U0001F6FF'
    '☀-⛿✀-➿]'
)
_NON_ASCII = re.compile(r'[^\n\x20-\x7E]')

_ASCII_FOLDS = {
    'å': 'a', 'ä': 'a', 'ö': 'o',
    'Å': 'A', 'Ä': 'A', 'Ö': 'O',
    'é': 'e', 'É': 'E', 'ü': 'u', 'Ü': 'U',
    '“': '"', '”': '"', '„': '"',
    '‘': "'", '’': "'",
    '–': '-', '—': '-',
    '•': '-', '°': ' deg',
}

def normalize_phone_number(phone: str) -> str:
    """Canonicalise a sender address to E.164"""
    normalized = re.sub(r'[^\d+]', '', phone)

    if not normalized.startswith('+'):
        if len(normalized) == 10:
            # Assume US number if no country code
            normalized = '+1' + normalized
        else:
            normalized = '+' + normalized

    return normalized

def sanitize_input(text: str) -> str:
    return re.sub(r'\s+', ' ', text.strip())

def normalize_sms_text(text: str) -> str:
    if not text:
        return ''

    for source, target in _ASCII_FOLDS.items():
        text = text.replace(source, target)

    text = _EMOJI.sub('', text)
    text = _NON_ASCII.sub('', text)
    text = re.sub(r'\n{2,}', '\n', text)

    lines = [line.strip() for line in text.strip().split('\n')]
    return '\n'.join(lines)

def estimate_sms_segments(text: str) -> int:
    length = len(text)

    if length <= 160:
        return 1
    if length <= 306:
        return 2
    if length <= 459:
        return 3
    if length <= 612:
        return 4

    return math.ceil(length / 153)

def truncate_for_sms(text: str, max_length: int = 1600) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + '...'
