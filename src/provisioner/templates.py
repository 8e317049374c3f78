"""Template source resolution and KEY=VALUE parameter parsing.

File reads enforce a size limit before reading. All input problems raise
ValidationError at the boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from .config import (
    CLOUDFORMATION_TEMPLATE_FILE,
    MAX_TEMPLATE_FILE_SIZE_BYTES,
    RELEASES_BUCKET_PREFIX,
    RELEASES_BUCKET_REGION,
)
from .errors import ValidationError
from .models import TemplateSource

logger = logging.getLogger(__name__)


def normalize_version(version: str) -> str:
    """Strip a leading ``v`` (release paths use ``0.1.0``, not ``v0.1.0``)."""
    return version[1:] if version.startswith("v") else version


def build_release_template_url(version: str, region: str = "") -> str:
    """Build the HTTPS URL of the published stack template for a release."""
    region = region or RELEASES_BUCKET_REGION
    bucket = f"{RELEASES_BUCKET_PREFIX}-{region}"
    return (
        f"https://{bucket}.s3.{region}.amazonaws.com/"
        f"{normalize_version(version)}/{CLOUDFORMATION_TEMPLATE_FILE}"
    )


def validate_release_region(region: str, release_regions: Sequence[str]) -> None:
    """Check that the default release template is published in ``region``.

    An empty ``release_regions`` list disables the check.
    """
    region = region.strip()
    if not region:
        raise ValidationError("region cannot be empty")
    if release_regions and region not in release_regions:
        raise ValidationError(
            f'region "{region}" is not supported. '
            f"Supported regions: {', '.join(release_regions)}"
        )


def resolve_template(locator: str, version: str, region: str = "") -> TemplateSource:
    """Map a template locator to a TemplateSource.

    - empty: the published release template for ``version``/``region``
    - ``http://`` / ``https://``: used as the URL
    - ``s3://bucket/key``: rewritten to ``https://bucket.s3.amazonaws.com/key``
    - anything else: a local file whose content becomes the body

    Raises:
        ValidationError: For a malformed S3 URI or an unreadable file.
    """
    if not locator:
        return TemplateSource(url=build_release_template_url(version, region))

    if locator.startswith(("http://", "https://")):
        return TemplateSource(url=locator)

    if locator.startswith("s3://"):
        bucket, _, key = locator[len("s3://") :].partition("/")
        if not bucket or not key:
            raise ValidationError(f"invalid S3 URI: {locator}")
        return TemplateSource(url=f"https://{bucket}.s3.amazonaws.com/{key}")

    return TemplateSource(body=load_template_body(Path(locator)))


def load_template_body(template_path: Path) -> str:
    """Read a local template file, enforcing the size limit."""
    if not template_path.is_file():
        raise ValidationError(f"Template file not found: {template_path}")

    try:
        file_size = template_path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Failed to stat template file {template_path}: {e}") from e

    if file_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise ValidationError(
            f"Template file exceeds maximum size of "
            f"{MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: {template_path}"
        )

    try:
        content = template_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ValidationError(f"failed to read template file: {e}") from e

    if not content.strip():
        raise ValidationError(f"Template file is empty: {template_path}")

    logger.info("Loaded template", extra={"template_path": str(template_path)})
    return content


def parse_parameters(items: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` strings, splitting on the first ``=``.

    Later duplicates win.
    """
    params: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValidationError(f"invalid parameter format: {item} (expected KEY=VALUE)")
        params[key] = value
    return params
