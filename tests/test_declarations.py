"""Tests for the declaration catalog and gate."""

import pytest

from efiling.declarations import (
    DEFAULT_CATALOG_PATH,
    DeclarationCatalog,
    DeclarationCatalogError,
    DeclarationGate,
)
from efiling.errors import FilingError
from efiling.models import Declaration, Filing
from tests.helpers.filing_flow import ITR1_DECLARATIONS


def _filing(subject, form_type="ITR-1"):
    return Filing(account_id="acct_1", subject=subject, form_type=form_type, assessment_period="2025-26")


class TestDeclarationCatalog:
    """Tests for loading the YAML catalog."""

    def test_bundled_catalog_loads(self):
        catalog = DeclarationCatalog.from_yaml(DEFAULT_CATALOG_PATH)
        assert catalog.catalog_version == "2025-26.1"
        assert {"ITR-1", "ITR-2", "ITR-3", "ITR-4"} <= set(catalog.form_types)

    def test_required_ids_skip_optional(self):
        catalog = DeclarationCatalog.from_yaml(DEFAULT_CATALOG_PATH)
        assert "itr.foreign-assets-notice.2025-1" in catalog.known_ids("ITR-2")
        assert "itr.foreign-assets-notice.2025-1" not in catalog.required_ids("ITR-2")

    def test_form_type_lookup_is_case_insensitive(self):
        catalog = DeclarationCatalog.from_yaml(DEFAULT_CATALOG_PATH)
        assert catalog.supports("itr-1")
        assert catalog.required_ids("itr-1") == ITR1_DECLARATIONS

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(DeclarationCatalogError):
            DeclarationCatalog.from_yaml(tmp_path / "missing.yaml")

    def test_file_without_form_types_raises(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("catalog_version: x\n")
        with pytest.raises(DeclarationCatalogError):
            DeclarationCatalog.from_yaml(path)

    def test_malformed_entry_raises(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("form_types:\n  ITR-1:\n    - id: only-an-id\n")
        with pytest.raises(DeclarationCatalogError):
            DeclarationCatalog.from_yaml(path)

    def test_unknown_form_type_raises(self):
        catalog = DeclarationCatalog({"ITR-1": []})
        with pytest.raises(DeclarationCatalogError):
            catalog.for_form_type("ITR-7")


class TestDeclarationGate:
    """Tests for the gate checked before verification."""

    def test_all_required_accepted(self, subject):
        gate = DeclarationGate()
        result = gate.check_accepted(_filing(subject), ITR1_DECLARATIONS)
        assert result.ok
        assert result.missing_ids == []

    def test_reports_missing_ids(self, subject):
        gate = DeclarationGate()
        result = gate.check_accepted(_filing(subject), ITR1_DECLARATIONS[:1])
        assert not result.ok
        assert result.missing_ids == ITR1_DECLARATIONS[1:]

    def test_form_type_with_extra_declaration(self, subject):
        gate = DeclarationGate()
        result = gate.check_accepted(_filing(subject, "ITR-3"), ITR1_DECLARATIONS)
        assert not result.ok
        assert result.missing_ids == ["itr.books-of-account.2025-1"]

    def test_fails_closed_when_catalog_unavailable(self, subject, tmp_path):
        gate = DeclarationGate(catalog_path=tmp_path / "missing.yaml")
        result = gate.check_accepted(_filing(subject), ITR1_DECLARATIONS)
        assert not result.ok
        assert result.catalog_available is False

    def test_fails_closed_for_unknown_form_type(self, subject):
        gate = DeclarationGate()
        result = gate.check_accepted(_filing(subject, "ITR-7"), ITR1_DECLARATIONS)
        assert not result.ok
        assert result.catalog_available is False

    def test_required_declarations_raises_when_unavailable(self, tmp_path):
        gate = DeclarationGate(catalog_path=tmp_path / "missing.yaml")
        with pytest.raises(FilingError) as exc_info:
            gate.required_declarations("ITR-1")
        assert exc_info.value.code == "DECLARATIONS_UNAVAILABLE"

    def test_unknown_ids(self, subject):
        gate = DeclarationGate()
        unknown = gate.unknown_ids(_filing(subject), ITR1_DECLARATIONS + ["itr.made-up.1"])
        assert unknown == ["itr.made-up.1"]

    def test_injected_catalog(self, subject):
        declaration = Declaration(declaration_id="d1", version="1", title="T", text="Text")
        gate = DeclarationGate(catalog=DeclarationCatalog({"ITR-1": [declaration]}))
        assert gate.check_accepted(_filing(subject), ["d1"]).ok
        assert gate.required_declarations("ITR-1") == [declaration]
