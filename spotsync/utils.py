"""
Identifier, session code and time-format helpers
"""
import random
import re
import string

SESSION_CODE_RE = re.compile(r"^\d{6}$")


def generate_connection_id(length: int = 12) -> str:
    """Generate a random connection ID"""
    alphabet = string.ascii_lowercase + string.digits
    return "conn_" + "".join(random.choice(alphabet) for _ in range(length))


def generate_session_code() -> str:
    """Generate a 6-digit session code, uniform over 100000-999999"""
    return str(random.randint(100000, 999999))


def is_valid_session_code(code) -> bool:
    return isinstance(code, str) and bool(SESSION_CODE_RE.match(code))


def generate_display_name() -> str:
    """Fallback name for participants that did not pick one"""
    moods = ["Mellow", "Loud", "Lo-fi", "Vinyl", "Midnight", "Sunny", "Analog", "Shuffled"]
    things = ["Listener", "Headphones", "Tape", "Chorus", "Bassline", "Encore", "Record"]
    return random.choice(moods) + random.choice(things) + str(random.randint(1, 99))


def time_to_ms(text) -> int:
    """Parse "ss", "mm:ss" or "hh:mm:ss" into milliseconds; 0 when unparseable"""
    if not text:
        return 0
    try:
        parts = [int(p) for p in str(text).strip().split(":")]
    except ValueError:
        return 0
    if len(parts) > 3:
        return 0
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + part
    return seconds * 1000


def ms_to_time(ms: float) -> str:
    total = max(0, int(ms // 1000))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"
