"""
Declaration catalog and gate.

The catalog is versioned reference data loaded from YAML
(config/declarations/itr_declarations.yaml by default). The gate answers a
single question: which required declarations for a filing's form type are
still unaccepted. It fails closed: if the catalog is unavailable or does not
know the form type, the gate is never satisfied.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml
from pydantic import BaseModel, Field

from .errors import FilingError
from .models import Declaration, Filing

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = (
    Path(__file__).parent.parent / "config" / "declarations" / "itr_declarations.yaml"
)


class DeclarationCatalogError(Exception):
    """Raised when declaration reference data cannot be loaded."""
    pass


class GateResult(BaseModel):
    """Outcome of a declaration check."""
    ok: bool
    missing_ids: List[str] = Field(default_factory=list)
    catalog_available: bool = True


class DeclarationCatalog:
    """
    Versioned declarations keyed by form type.

    Usage:
        catalog = DeclarationCatalog.from_yaml(path)
        catalog.for_form_type("ITR-1")
    """

    def __init__(
        self,
        declarations_by_form: Dict[str, List[Declaration]],
        catalog_version: str = "",
    ):
        self._by_form = {k.upper(): list(v) for k, v in declarations_by_form.items()}
        self.catalog_version = catalog_version

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DeclarationCatalog":
        """
        Load a catalog from a YAML file.

        Raises:
            DeclarationCatalogError: If the file is missing or malformed.
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as e:
            raise DeclarationCatalogError(f"Cannot read declaration catalog {path}: {e}") from e

        if not isinstance(raw, dict) or not isinstance(raw.get("form_types"), dict):
            raise DeclarationCatalogError(f"Declaration catalog {path} has no form_types section")

        by_form: Dict[str, List[Declaration]] = {}
        try:
            for form_type, entries in raw["form_types"].items():
                by_form[str(form_type)] = [
                    Declaration(
                        declaration_id=entry["id"],
                        version=str(entry["version"]),
                        title=entry["title"],
                        text=entry["text"],
                        required=bool(entry.get("required", True)),
                    )
                    for entry in entries or []
                ]
        except (KeyError, TypeError, ValueError) as e:
            raise DeclarationCatalogError(f"Malformed declaration entry in {path}: {e}") from e

        catalog = cls(by_form, catalog_version=str(raw.get("catalog_version", "")))
        logger.info(
            f"[DECLARATION] Catalog loaded | version={catalog.catalog_version} | "
            f"form_types={sorted(catalog.form_types)}"
        )
        return catalog

    @property
    def form_types(self) -> List[str]:
        return list(self._by_form.keys())

    def supports(self, form_type: str) -> bool:
        return form_type.upper() in self._by_form

    def for_form_type(self, form_type: str) -> List[Declaration]:
        """All declarations (required and optional) for a form type."""
        try:
            return list(self._by_form[form_type.upper()])
        except KeyError:
            raise DeclarationCatalogError(f"No declarations defined for form type {form_type}")

    def required_ids(self, form_type: str) -> List[str]:
        return [d.declaration_id for d in self.for_form_type(form_type) if d.required]

    def known_ids(self, form_type: str) -> List[str]:
        return [d.declaration_id for d in self.for_form_type(form_type)]


class DeclarationGate:
    """
    Checks required declarations before verification may start.

    The catalog is loaded on first use, so a broken reference-data source
    is reported per check rather than at startup.
    """

    def __init__(
        self,
        catalog: Optional[DeclarationCatalog] = None,
        catalog_path: Optional[Union[str, Path]] = None,
    ):
        self._catalog = catalog
        self._catalog_path = Path(catalog_path) if catalog_path else DEFAULT_CATALOG_PATH

    def _load_catalog(self) -> DeclarationCatalog:
        if self._catalog is None:
            self._catalog = DeclarationCatalog.from_yaml(self._catalog_path)
        return self._catalog

    def check_accepted(self, filing: Filing, accepted_ids: Iterable[str]) -> GateResult:
        """
        Compare accepted declaration ids with what the form type requires.

        Args:
            filing: Filing being checked (only form_type is read)
            accepted_ids: Declaration ids the filer has accepted

        Returns:
            GateResult; ok is False whenever the catalog cannot be consulted
        """
        try:
            required = self._load_catalog().required_ids(filing.form_type)
        except DeclarationCatalogError as e:
            logger.error(
                f"[DECLARATION] Catalog unavailable, gate closed | "
                f"filing={filing.filing_id} | form={filing.form_type} | error={e}"
            )
            return GateResult(ok=False, missing_ids=[], catalog_available=False)

        accepted = set(accepted_ids)
        missing = [d for d in required if d not in accepted]
        return GateResult(ok=not missing, missing_ids=missing)

    def required_declarations(self, form_type: str) -> List[Declaration]:
        """
        Declaration texts the filer must be shown for a form type.

        Raises:
            FilingError: DECLARATIONS_UNAVAILABLE if reference data cannot be read.
        """
        try:
            return self._load_catalog().for_form_type(form_type)
        except DeclarationCatalogError as e:
            raise FilingError(
                str(e),
                code="DECLARATIONS_UNAVAILABLE",
                details={"form_type": form_type},
            ) from e

    def unknown_ids(self, filing: Filing, declaration_ids: Iterable[str]) -> List[str]:
        """Ids that are not part of the form type's current declaration set."""
        try:
            known = set(self._load_catalog().known_ids(filing.form_type))
        except DeclarationCatalogError:
            return list(declaration_ids)
        return [d for d in declaration_ids if d not in known]

    def supports(self, form_type: str) -> bool:
        try:
            return self._load_catalog().supports(form_type)
        except DeclarationCatalogError:
            return False
