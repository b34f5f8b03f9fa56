"""Short, human-typeable ticket code generation."""
import secrets
import string

from config import TICKET_CODE_LENGTH, TICKET_CODE_PREFIX

TICKET_CODE_ALPHABET = string.ascii_uppercase + string.digits
MIN_CODE_LENGTH = 6
MAX_CODE_LENGTH = 10


def generate_ticket_code(length: int = TICKET_CODE_LENGTH, prefix: str = TICKET_CODE_PREFIX) -> str:
    """
    Return a random code such as `TICK-7QX2KD`.

    Not unique by itself: callers insert under a unique index and regenerate
    on collision.
    """
    length = max(MIN_CODE_LENGTH, min(MAX_CODE_LENGTH, int(length)))
    body = "".join(secrets.choice(TICKET_CODE_ALPHABET) for _ in range(length))
    return f"{prefix or ''}{body}"
