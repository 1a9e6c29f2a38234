from .resolver import (
    AppProfile,
    ConfigProfile,
    ContextResolver,
    ProfileOverrides,
    ProfileSettings,
    ProfileSource,
    UrlProfile,
    url_matches,
)

__all__ = [
    "AppProfile",
    "ConfigProfile",
    "ContextResolver",
    "ProfileOverrides",
    "ProfileSettings",
    "ProfileSource",
    "UrlProfile",
    "url_matches",
]
