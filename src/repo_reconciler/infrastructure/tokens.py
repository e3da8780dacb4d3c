import logging
import re

# Token shapes issued by GitHub: classic PAT, OAuth, user-to-server, server-to-server, refresh, fine-grained PAT.
TOKEN_PATTERN = re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{36,255}|github_pat_[A-Za-z0-9_]{22,255})\b")
VALID_TOKEN_FORMAT = re.compile(r"^(?:gh[pousr]_[A-Za-z0-9]{36,255}|github_pat_[A-Za-z0-9_]{22,255})$")

REDACTED = "[REDACTED]"


def redact(text: str) -> str:
    """Masks anything that looks like a GitHub token."""
    return TOKEN_PATTERN.sub(REDACTED, text)


def is_valid_token_format(token: str) -> bool:
    return bool(VALID_TOKEN_FORMAT.match(token))


class TokenRedactingFilter(logging.Filter):
    """
    Logging filter that strips GitHub tokens from log messages and their arguments.
    Installed on the root handlers so nothing a library logs can leak a credential.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact(arg) if isinstance(arg, str) else arg for arg in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: redact(value) if isinstance(value, str) else value for key, value in record.args.items()}
        return True
