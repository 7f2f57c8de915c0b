"""Input checks applied before a job record is created."""

from typing import Dict, Tuple
from urllib.parse import urlparse

from feedback_flow.jobs.errors import ValidationError
from feedback_flow.jobs.models import SourceType

MIN_NAME_LENGTH = 2

# Platforms the collectors know how to scrape. Forum and website sources
# accept any http(s) host.
ALLOWED_HOSTS: Dict[SourceType, Tuple[str, ...]] = {
    SourceType.SOCIAL: (
        "facebook.com",
        "instagram.com",
        "reddit.com",
        "youtube.com",
        "twitter.com",
        "x.com",
        "linkedin.com",
    ),
    SourceType.REVIEWS: (
        "trustpilot.com",
        "yelp.com",
        "google.com",
        "tripadvisor.com",
        "amazon.com",
    ),
    SourceType.SURVEY: (
        "surveymonkey.com",
        "typeform.com",
        "google.com",
        "forms.office.com",
        "qualtrics.com",
    ),
}


def _host_allowed(hostname: str, allowed: Tuple[str, ...]) -> bool:
    hostname = hostname.lower().rstrip(".")
    return any(hostname == d or hostname.endswith("." + d) for d in allowed)


def validate_submission(name: str, source_url: str, source_type) -> SourceType:
    """Validate a new job request. Returns the parsed source type.

    Raises ValidationError naming the first field that failed.
    """
    if not name or len(name.strip()) < MIN_NAME_LENGTH:
        raise ValidationError("name", f"Name must be at least {MIN_NAME_LENGTH} characters.")

    try:
        kind = SourceType(source_type)
    except ValueError:
        allowed = ", ".join(t.value for t in SourceType)
        raise ValidationError("source_type", f"Unknown source type '{source_type}'. Expected one of: {allowed}.")

    try:
        parsed = urlparse((source_url or "").strip())
    except ValueError:
        raise ValidationError("source_url", "Malformed URL.")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError("source_url", "URL must be an absolute http(s) address.")

    allowed_hosts = ALLOWED_HOSTS.get(kind)
    if allowed_hosts and not _host_allowed(parsed.hostname, allowed_hosts):
        raise ValidationError(
            "source_url",
            f"Unsupported host '{parsed.hostname}' for {kind.value} sources. "
            f"Supported: {', '.join(allowed_hosts)}.",
        )

    return kind
