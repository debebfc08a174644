"""
pgkeeper - Config Validator Implementation
Valide la section keeper contre les règles de cohérence du coordinateur.
"""

import re
from datetime import datetime
from typing import Any, Dict, Optional

from .interfaces import IConfigValidator, ValidationError, ValidationResult, ValidationSeverity

REQUIRED_FIELDS = ("node_name", "my_endpoint", "data_directory")

# schema.table ou table, identifiants PostgreSQL non quotés
_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*(\.[A-Za-z_][A-Za-z0-9_$]*)?$")

MAX_PROBE_TIMEOUT = 30.0


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class ConfigValidator(IConfigValidator):
    """Validation de la configuration keeper."""

    def __init__(self):
        self._validators = {
            "CFG_001": self._validate_cfg_001,
            "CFG_002": self._validate_cfg_002,
            "CFG_003": self._validate_cfg_003,
            "CFG_004": self._validate_cfg_004,
            "CFG_005": self._validate_cfg_005,
            "CFG_006": self._validate_cfg_006,
            "CFG_007": self._validate_cfg_007,
            "CFG_008": self._validate_cfg_008,
            "CFG_009": self._validate_cfg_009,
        }

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        """
        Valide une config contre TOUTES les règles.
        Retourne TOUTES les erreurs (pas fail-fast).
        """
        errors = []
        warnings = []

        for rule_id in self._validators:
            error = self.validate_rule(rule_id, config)
            if error:
                if error.severity == ValidationSeverity.BLOCKING:
                    errors.append(error)
                elif error.severity == ValidationSeverity.WARNING:
                    warnings.append(error)

        return ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings, checked_at=datetime.now())

    def validate_rule(self, rule_id: str, config: Dict[str, Any]) -> Optional[ValidationError]:
        """Valide UNE règle spécifique."""
        if rule_id not in self._validators:
            return ValidationError(
                rule_id=rule_id,
                message=f"Règle inconnue: {rule_id}",
                location="keeper",
                severity=ValidationSeverity.BLOCKING,
            )

        return self._validators[rule_id](config)

    def _validate_cfg_001(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_001: node_name, my_endpoint et data_directory obligatoires."""
        for field in REQUIRED_FIELDS:
            value = config.get(field)
            if not isinstance(value, str) or not value.strip():
                return ValidationError(
                    rule_id="CFG_001",
                    message=f"Champ obligatoire manquant ou vide: {field}",
                    location=f"keeper.{field}",
                    value=None if value is None else str(value),
                )
        return None

    def _validate_cfg_002(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_002: heartbeat_interval >= 1 seconde."""
        raw = config.get("heartbeat_interval", 5)
        value = _number(raw)
        if value is None or value < 1:
            return ValidationError(
                rule_id="CFG_002",
                message="heartbeat_interval doit être un nombre >= 1",
                location="keeper.heartbeat_interval",
                value=str(raw),
            )
        return None

    def _validate_cfg_003(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_003: retry_threshold entier >= 1."""
        raw = config.get("retry_threshold", 3)
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
            return ValidationError(
                rule_id="CFG_003",
                message="retry_threshold doit être un entier >= 1",
                location="keeper.retry_threshold",
                value=str(raw),
            )
        return None

    def _validate_cfg_004(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_004: 0 < probe_timeout < heartbeat_interval."""
        raw = config.get("probe_timeout", 2)
        value = _number(raw)
        interval = _number(config.get("heartbeat_interval", 5))

        if value is None or value <= 0 or value > MAX_PROBE_TIMEOUT:
            return ValidationError(
                rule_id="CFG_004",
                message=f"probe_timeout doit être compris entre 0 et {MAX_PROBE_TIMEOUT:g} secondes",
                location="keeper.probe_timeout",
                value=str(raw),
            )

        if interval is not None and value >= interval:
            return ValidationError(
                rule_id="CFG_004",
                message=f"probe_timeout ({value:g}s) doit être inférieur à heartbeat_interval ({interval:g}s)",
                location="keeper.probe_timeout",
                value=str(raw),
            )
        return None

    def _validate_cfg_005(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_005: notify_port dans 1..65535."""
        raw = config.get("notify_port", 5480)
        if isinstance(raw, bool) or not isinstance(raw, int) or not 1 <= raw <= 65535:
            return ValidationError(
                rule_id="CFG_005",
                message="notify_port doit être un port valide (1-65535)",
                location="keeper.notify_port",
                value=str(raw),
            )
        return None

    def _validate_cfg_006(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_006: demote_attempts entier >= 1."""
        raw = config.get("demote_attempts", 5)
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
            return ValidationError(
                rule_id="CFG_006",
                message="demote_attempts doit être un entier >= 1",
                location="keeper.demote_attempts",
                value=str(raw),
            )
        return None

    def _validate_cfg_007(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_007: promote_timeout > 0."""
        raw = config.get("promote_timeout", 60)
        value = _number(raw)
        if value is None or value <= 0:
            return ValidationError(
                rule_id="CFG_007",
                message="promote_timeout doit être un nombre positif",
                location="keeper.promote_timeout",
                value=str(raw),
            )
        return None

    def _validate_cfg_008(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_008: membership_table de la forme schema.table."""
        raw = config.get("membership_table", "pgkeeper.node_info")
        if not isinstance(raw, str) or not _TABLE_NAME.match(raw):
            return ValidationError(
                rule_id="CFG_008",
                message="membership_table doit être un identifiant 'schema.table'",
                location="keeper.membership_table",
                value=str(raw),
            )
        return None

    def _validate_cfg_009(self, config: Dict[str, Any]) -> Optional[ValidationError]:
        """CFG_009: sans partner_endpoint, le mode deux noeuds est indisponible."""
        if config.get("partner_endpoint"):
            return None

        return ValidationError(
            rule_id="CFG_009",
            message="partner_endpoint absent: un standby sans primaire enregistré ne surveillera personne",
            location="keeper.partner_endpoint",
            severity=ValidationSeverity.WARNING,
        )
