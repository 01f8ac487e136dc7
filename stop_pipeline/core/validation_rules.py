"""
Administrative-area validation for geocoding results.

A geocoder hit is only trusted when the city, neighborhood and state it
reports agree with what the spreadsheet row declares. Each rule checks one
field and returns a ValidationResult when it disagrees.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from stop_pipeline.core.address_normalizer import normalize_text

# Brazilian state codes, so "SP" declared in a sheet matches "São Paulo"
# reported by the provider.
STATE_NAMES = {
    "ac": "acre",
    "al": "alagoas",
    "ap": "amapa",
    "am": "amazonas",
    "ba": "bahia",
    "ce": "ceara",
    "df": "distrito federal",
    "es": "espirito santo",
    "go": "goias",
    "ma": "maranhao",
    "mt": "mato grosso",
    "ms": "mato grosso do sul",
    "mg": "minas gerais",
    "pa": "para",
    "pb": "paraiba",
    "pr": "parana",
    "pe": "pernambuco",
    "pi": "piaui",
    "rj": "rio de janeiro",
    "rn": "rio grande do norte",
    "rs": "rio grande do sul",
    "ro": "rondonia",
    "rr": "roraima",
    "sc": "santa catarina",
    "sp": "sao paulo",
    "se": "sergipe",
    "to": "tocantins",
}


@dataclass
class ValidationResult:
    """Result of a validation rule check."""
    flag: str  # Short identifier (e.g., "city-mismatch")
    severity: str  # "INFO", "WARNING", "ERROR"
    message: str  # Human-readable description


def fuzzy_contains(expected: str, got: str) -> bool:
    """Substring containment in either direction on normalized text."""
    return expected in got or got in expected


def _normalize_admin(value: Optional[str]) -> str:
    return normalize_text(value, expand_abbreviations=False)


class ValidationRule(ABC):
    """Base class for administrative-area rules."""

    @abstractmethod
    def check(
        self,
        declared: Dict[str, Optional[str]],
        provider_address: Dict[str, Any],
        **kwargs
    ) -> Optional[ValidationResult]:
        """Check if the provider address disagrees with the declared one.

        Args:
            declared: Row values keyed by neighborhood/city/state
            provider_address: Structured address returned by the geocoder
            **kwargs: Additional fields

        Returns:
            ValidationResult if the rule triggered, None otherwise
        """
        pass


class AdminFieldRule(ValidationRule):
    """Compare one declared field against the first non-empty provider field."""

    flag = "admin-mismatch"
    declared_field = ""
    provider_fields: List[str] = []

    def expected_value(self, declared: Dict[str, Optional[str]]) -> str:
        return _normalize_admin(declared.get(self.declared_field))

    def provider_value(self, provider_address: Dict[str, Any]) -> str:
        for field in self.provider_fields:
            value = provider_address.get(field)
            if value:
                return _normalize_admin(str(value))
        return ""

    def check(
        self,
        declared: Dict[str, Optional[str]],
        provider_address: Dict[str, Any],
        **kwargs
    ) -> Optional[ValidationResult]:
        expected = self.expected_value(declared)
        if not expected:
            # Missing metadata is never held against the geocoder
            return None

        got = self.provider_value(provider_address or {})
        if got and fuzzy_contains(expected, got):
            return None

        return ValidationResult(
            flag=self.flag,
            severity="WARNING",
            message=f"Declared {self.declared_field} '{expected}' does not match provider '{got or '-'}'",
        )


class CityMatchRule(AdminFieldRule):
    flag = "city-mismatch"
    declared_field = "city"
    provider_fields = ["city", "town", "village", "municipality", "county"]


class NeighborhoodMatchRule(AdminFieldRule):
    flag = "neighborhood-mismatch"
    declared_field = "neighborhood"
    provider_fields = ["suburb", "neighbourhood", "quarter", "city_district"]


class StateMatchRule(AdminFieldRule):
    flag = "state-mismatch"
    declared_field = "state"
    provider_fields = ["state"]

    def expected_value(self, declared: Dict[str, Optional[str]]) -> str:
        value = super().expected_value(declared)
        return STATE_NAMES.get(value, value)


class ValidationEngine:
    """Runs administrative-area rules and collects results."""

    def __init__(self, rules: Optional[List[ValidationRule]] = None):
        """Initialize validation engine.

        Args:
            rules: List of validation rules to apply
        """
        self.rules = rules or self._get_default_rules()

    @staticmethod
    def _get_default_rules() -> List[ValidationRule]:
        """Get default validation rules."""
        return [
            CityMatchRule(),
            NeighborhoodMatchRule(),
            StateMatchRule(),
        ]

    def validate(self, **data) -> List[ValidationResult]:
        """Run all validation rules.

        Args:
            **data: declared and provider_address mappings

        Returns:
            List of ValidationResult for triggered rules
        """
        results = []

        for rule in self.rules:
            result = rule.check(**data)
            if result is not None:
                results.append(result)

        return results

    def matches(
        self,
        provider_address: Optional[Dict[str, Any]],
        neighborhood: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
    ) -> bool:
        """True when no rule flags the provider address."""
        results = self.validate(
            declared={"neighborhood": neighborhood, "city": city, "state": state},
            provider_address=provider_address or {},
        )
        return not results

    def get_validation_flags(self, results: List[ValidationResult]) -> List[str]:
        """Extract validation flags from results."""
        return [r.flag for r in results]
