"""Tests for the localization table."""

import json

import pytest

from telechat_bot.i18n import Localizer


def test_bundled_languages_load(localizer):
    assert set(localizer.languages()) == {"en", "id"}
    assert localizer.get("id", "choose_lang") != localizer.get("en", "choose_lang")


def test_falls_back_to_english_then_key(tmp_path):
    (tmp_path / "en.json").write_text(json.dumps({"hello": "Hello", "only_en": "English only"}))
    (tmp_path / "id.json").write_text(json.dumps({"hello": "Halo"}))
    loc = Localizer.load(tmp_path, ["en", "id"])

    assert loc.get("id", "hello") == "Halo"
    assert loc.get("id", "only_en") == "English only"
    assert loc.get("fr", "hello") == "Hello"
    assert loc.get("id", "missing_key") == "missing_key"


def test_missing_file_is_skipped(tmp_path):
    (tmp_path / "en.json").write_text(json.dumps({"k": "v"}))
    loc = Localizer.load(tmp_path, ["en", "xx"])
    assert loc.languages() == ["en"]


def test_format_arguments(localizer):
    assert "Alice" in localizer.get("en", "closed_by", name="Alice")


def test_tables_are_read_only():
    loc = Localizer({"en": {"k": "v"}})
    with pytest.raises(TypeError):
        loc._tables["en"]["k"] = "changed"
