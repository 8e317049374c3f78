"""Tests for template resolution and parameter parsing."""

from pathlib import Path

import pytest

from provisioner.config import MAX_TEMPLATE_FILE_SIZE_BYTES
from provisioner.errors import ValidationError
from provisioner.templates import (
    build_release_template_url,
    load_template_body,
    normalize_version,
    parse_parameters,
    resolve_template,
    validate_release_region,
)

TEMPLATE_BODY = """\
AWSTemplateFormatVersion: "2010-09-09"
Resources:
  Table:
    Type: AWS::DynamoDB::Table
"""


class TestNormalizeVersion:
    @pytest.mark.parametrize(
        ("version", "expected"),
        [("v1.2.0", "1.2.0"), ("1.2.0", "1.2.0"), ("", "")],
    )
    def test_strips_leading_v(self, version: str, expected: str) -> None:
        assert normalize_version(version) == expected


class TestResolveTemplate:
    """Tests for resolve_template."""

    def test_empty_locator_uses_release_url(self) -> None:
        source = resolve_template("", "v0.4.1", "eu-west-1")

        assert source.url == (
            "https://runvoy-releases-eu-west-1.s3.eu-west-1.amazonaws.com/"
            "0.4.1/cloudformation-backend.yaml"
        )
        assert source.body == ""

    def test_release_url_defaults_region(self) -> None:
        assert build_release_template_url("1.0.0") == (
            "https://runvoy-releases-us-east-1.s3.us-east-1.amazonaws.com/"
            "1.0.0/cloudformation-backend.yaml"
        )

    def test_https_url_passthrough(self) -> None:
        url = "https://templates.example.com/backend.yaml"
        assert resolve_template(url, "", "").url == url

    def test_s3_uri_rewritten(self) -> None:
        source = resolve_template("s3://my-bucket/path/to/template.yaml", "", "")

        assert source.url == "https://my-bucket.s3.amazonaws.com/path/to/template.yaml"

    @pytest.mark.parametrize("uri", ["s3://my-bucket", "s3://my-bucket/", "s3:///key"])
    def test_s3_uri_without_key(self, uri: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            resolve_template(uri, "", "")

        assert "invalid S3 URI" in str(exc_info.value)

    def test_local_file_becomes_body(self, tmp_path: Path) -> None:
        template = tmp_path / "backend.yaml"
        template.write_text(TEMPLATE_BODY)

        source = resolve_template(str(template), "", "")

        assert source.body == TEMPLATE_BODY
        assert source.url == ""

    def test_local_file_load_logs_path(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        template = tmp_path / "backend.yaml"
        template.write_text(TEMPLATE_BODY)

        with caplog.at_level("INFO", logger="provisioner.templates"):
            resolve_template(str(template), "", "")

        [record] = [r for r in caplog.records if r.getMessage() == "Loaded template"]
        assert record.template_path == str(template)

    def test_missing_local_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError) as exc_info:
            resolve_template(str(tmp_path / "missing.yaml"), "", "")

        assert "not found" in str(exc_info.value)


class TestLoadTemplateBody:
    def test_rejects_oversized_file(self, tmp_path: Path) -> None:
        template = tmp_path / "huge.yaml"
        template.write_text("#" * (MAX_TEMPLATE_FILE_SIZE_BYTES + 1))

        with pytest.raises(ValidationError) as exc_info:
            load_template_body(template)

        assert "exceeds maximum size" in str(exc_info.value)

    def test_rejects_empty_file(self, tmp_path: Path) -> None:
        template = tmp_path / "empty.yaml"
        template.write_text("  \n")

        with pytest.raises(ValidationError):
            load_template_body(template)


class TestValidateReleaseRegion:
    def test_any_region_when_unrestricted(self) -> None:
        validate_release_region("ap-south-1", ())

    def test_rejects_unlisted_region(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_release_region("ap-south-1", ("us-east-1", "eu-west-1"))

        assert "us-east-1, eu-west-1" in str(exc_info.value)

    def test_rejects_empty_region(self) -> None:
        with pytest.raises(ValidationError):
            validate_release_region("  ", ())


class TestParseParameters:
    """Tests for KEY=VALUE parsing."""

    def test_splits_on_first_equals(self) -> None:
        params = parse_parameters(["ConnectionString=host=db;port=5432", "Env=prod"])

        assert params == {"ConnectionString": "host=db;port=5432", "Env": "prod"}

    def test_empty_value_allowed(self) -> None:
        assert parse_parameters(["Suffix="]) == {"Suffix": ""}

    def test_later_duplicate_wins(self) -> None:
        assert parse_parameters(["Env=dev", "Env=prod"]) == {"Env": "prod"}

    @pytest.mark.parametrize("item", ["NoEquals", "=value"])
    def test_malformed(self, item: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_parameters([item])

        assert "expected KEY=VALUE" in str(exc_info.value)
