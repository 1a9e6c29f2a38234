"""
Context-dependent configuration.

Picks the profile for a session from the application that was frontmost
when recording started, and the browser URL if there was one. Precedence:
URL override under the app's profile, then the app profile, then the
global default. Unset fields fall through to the next level.
"""

import re
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...utils.logger import get_logger

logger = get_logger(__name__)


class ProfileSource(Enum):
    GLOBAL = "global"
    APP = "app"
    URL = "url"


class ProfileSettings(BaseModel):
    """Global default. Every field has a value."""

    model_config = ConfigDict(extra="ignore")

    enhancement_enabled: bool = False
    provider: str = "openai"
    prompt_id: Optional[str] = "clean_up"


class ProfileOverrides(BaseModel):
    """Partial settings. ``None`` means inherit from the enclosing level."""

    model_config = ConfigDict(extra="ignore")

    enhancement_enabled: Optional[bool] = None
    provider: Optional[str] = None
    prompt_id: Optional[str] = None


class UrlProfile(ProfileOverrides):
    id: str
    patterns: List[str] = Field(default_factory=list)

    @field_validator("patterns")
    @classmethod
    def patterns_not_blank(cls, v):
        return [p.strip() for p in v if isinstance(p, str) and p.strip()]


class AppProfile(ProfileOverrides):
    app_id: str
    url_profiles: List[UrlProfile] = Field(default_factory=list)

    @field_validator("app_id")
    @classmethod
    def app_id_not_empty(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("app_id must be a non-empty string")
        return v.strip()


class ConfigProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    enhancement_enabled: bool
    provider: str
    prompt_id: Optional[str]
    source: ProfileSource = ProfileSource.GLOBAL
    app_id: Optional[str] = None
    url_profile_id: Optional[str] = None


_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*)://")

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _split_url(
    value: str, default_scheme: Optional[str]
) -> Optional[Tuple[Optional[str], str, Optional[int], str]]:
    """
    Return ``(scheme, host, port, path)``, or ``None`` when malformed.

    Scheme and host are lowercased. ``port`` is ``None`` when absent or equal
    to the scheme's default port.
    """
    value = value.strip()
    if not value:
        return None

    match = _SCHEME_RE.match(value)
    if match:
        scheme, rest = match.group(1).lower(), value[match.end():]
    else:
        scheme, rest = default_scheme, value

    try:
        parsed = urlsplit(f"//{rest}")
        host = parsed.hostname
        port = parsed.port
    except ValueError:
        return None

    if not host:
        return None
    if port is not None and port == _DEFAULT_PORTS.get(scheme):
        port = None
    return scheme, host, port, parsed.path


def url_matches(pattern: str, url: str) -> bool:
    """
    Match ``url`` against a configured pattern.

    Scheme and host compare case-insensitively, the path compares by prefix.
    A trailing ``*`` is accepted as an explicit prefix marker. Patterns
    without a scheme match any scheme. Default ports are ignored; any other
    port must appear in both.
    """
    target = _split_url(url, default_scheme="https")
    expected = _split_url(pattern.rstrip("*"), default_scheme=None)
    if target is None or expected is None:
        return False

    scheme, host, port, path = target
    want_scheme, want_host, want_port, want_path = expected

    if want_scheme is not None and want_scheme != scheme:
        return False
    if want_scheme is None and want_port == _DEFAULT_PORTS.get(scheme):
        want_port = None
    if want_host != host or want_port != port:
        return False
    return path.startswith(want_path)


class ContextResolver:
    """
    Resolves the ``ConfigProfile`` for an app id and optional URL.

    Resolution is pure and never fails: without a matching app or URL the
    global default is returned.
    """

    def __init__(
        self,
        default: Optional[ProfileSettings] = None,
        app_profiles: Optional[List[AppProfile]] = None,
    ):
        self.default = default or ProfileSettings()
        self._app_profiles = {}
        for profile in app_profiles or []:
            key = profile.app_id.lower()
            if key in self._app_profiles:
                logger.warning(
                    f"Duplicate profile for app '{profile.app_id}', keeping the first"
                )
                continue
            self._app_profiles[key] = profile

    def resolve(self, app_id: Optional[str], url: Optional[str] = None) -> ConfigProfile:
        values = self.default.model_dump()
        source = ProfileSource.GLOBAL
        url_profile_id = None

        app_profile = self._app_profiles.get(app_id.lower()) if app_id else None
        if app_profile is not None:
            values.update(_overrides(app_profile))
            source = ProfileSource.APP

            url_profile = self._match_url(app_profile, url) if url else None
            if url_profile is not None:
                values.update(_overrides(url_profile))
                source = ProfileSource.URL
                url_profile_id = url_profile.id

        profile = ConfigProfile(
            **values,
            source=source,
            app_id=app_id,
            url_profile_id=url_profile_id,
        )
        logger.debug(
            f"Resolved profile for app={app_id!r} url={url!r}: "
            f"source={source.value}, enhance={profile.enhancement_enabled}, "
            f"provider={profile.provider}, prompt={profile.prompt_id}"
        )
        return profile

    @staticmethod
    def _match_url(app_profile: AppProfile, url: str) -> Optional[UrlProfile]:
        for url_profile in app_profile.url_profiles:
            if any(url_matches(pattern, url) for pattern in url_profile.patterns):
                return url_profile
        return None


def _overrides(profile: ProfileOverrides) -> dict:
    return {
        name: getattr(profile, name)
        for name in ProfileOverrides.model_fields
        if getattr(profile, name) is not None
    }
