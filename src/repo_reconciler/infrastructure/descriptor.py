"""
Reads the local package descriptor (an npm-style ``package.json``) into CanonicalMetadata.

Recognised keys: ``name``, ``homepage``, ``description``, ``repository`` and
``keywords``. Keywords become repository topics.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union
from urllib.parse import urlparse

from pydantic import ValidationError

from repo_reconciler.domain.exceptions import MalformedDescriptor
from repo_reconciler.domain.models import CanonicalMetadata

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTOR = "package.json"

# GitHub topic rules: lowercase letters, digits and hyphens, at most 50 characters.
TOPIC_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,49}$")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})/[A-Za-z0-9._-]{1,100}$")

_SCP_STYLE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")
_SHORTHAND = re.compile(r"^(?:(?P<provider>github|gitlab|bitbucket):)?(?P<path>[\w.-]+/[\w.-]+)$")
_SHORTHAND_HOSTS = {"github": "github.com", "gitlab": "gitlab.com", "bitbucket": "bitbucket.org"}


def normalize_repository_url(raw: str) -> str:
    """
    Turns the many ways npm lets you spell a repository into a plain https URL.

    >>> normalize_repository_url("git+https://github.com/octo/tool.git")
    'https://github.com/octo/tool'
    >>> normalize_repository_url("github:octo/tool")
    'https://github.com/octo/tool'
    """
    url = raw.strip()
    shorthand = _SHORTHAND.match(url)
    if shorthand:
        host = _SHORTHAND_HOSTS[shorthand.group('provider') or 'github']
        url = f"https://{host}/{shorthand.group('path')}"
    elif "://" not in url:
        scp = _SCP_STYLE.match(url)
        if scp:
            url = f"https://{scp.group('host')}/{scp.group('path')}"
    else:
        url = re.sub(r"^git\+", "", url)
        url = re.sub(r"^(?:git|ssh)://(?:[\w.-]+@)?", "https://", url)

    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url


def normalize_topics(keywords: Iterable[Any]) -> FrozenSet[str]:
    """Lowercases keywords, hyphenates whitespace and drops anything GitHub would reject as a topic."""
    topics = set()
    for keyword in keywords:
        if not isinstance(keyword, str):
            logger.warning(f"Ignoring non-string keyword {keyword!r}.")
            continue
        topic = re.sub(r"\s+", "-", keyword.strip().lower())
        if not TOPIC_PATTERN.match(topic):
            logger.warning(f"Ignoring keyword '{keyword}': not a valid GitHub topic.")
            continue
        topics.add(topic)
    return frozenset(topics)


def derive_identifier(repository_url: str) -> str:
    """Returns `owner/repo` from the first two path segments of a repository URL."""
    segments = [segment for segment in urlparse(repository_url).path.split("/") if segment]
    if len(segments) < 2:
        raise ValueError(f"Cannot derive owner/repo from '{repository_url}'.")
    identifier = f"{segments[0]}/{segments[1]}"
    if not IDENTIFIER_PATTERN.match(identifier):
        raise ValueError(f"'{identifier}' is not a valid owner/repo identifier.")
    return identifier


def _optional_text(data: Dict[str, Any], key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedDescriptor(path, f"'{key}' must be a string")
    return value.strip() or None


def _repository_url(repository: Union[str, Dict[str, Any], None], path: str) -> str:
    if isinstance(repository, dict):
        repository = repository.get('url')
    if not isinstance(repository, str) or not repository.strip():
        raise MalformedDescriptor(path, "'repository.url' is required")
    return normalize_repository_url(repository)


def load_canonical(path: Union[str, Path] = DEFAULT_DESCRIPTOR) -> CanonicalMetadata:
    """
    Reads and validates the descriptor at `path`.

    Raises:
        MalformedDescriptor: if the file cannot be read or parsed, or if `name`
            or `repository.url` are missing or malformed.
    """
    path_str = str(path)
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise MalformedDescriptor(path_str, f"cannot read file ({e.strerror or e})") from e
    except json.JSONDecodeError as e:
        raise MalformedDescriptor(path_str, f"invalid JSON at line {e.lineno}: {e.msg}") from e

    if not isinstance(data, dict):
        raise MalformedDescriptor(path_str, "top level must be an object")

    name = data.get('name')
    if not isinstance(name, str) or not name.strip():
        raise MalformedDescriptor(path_str, "'name' is required")

    keywords = data.get('keywords') or []
    if not isinstance(keywords, list):
        raise MalformedDescriptor(path_str, "'keywords' must be a list")

    try:
        canonical = CanonicalMetadata(
            name=name.strip(),
            homepage_url=_optional_text(data, 'homepage', path_str),
            description=_optional_text(data, 'description', path_str),
            repository_url=_repository_url(data.get('repository'), path_str),
            topics=normalize_topics(keywords),
        )
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors())
        raise MalformedDescriptor(path_str, problems) from e

    logger.debug(f"Loaded canonical metadata for {canonical.name} from {path_str}.")
    return canonical
