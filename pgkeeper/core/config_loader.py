"""
pgkeeper - Config Loader Implementation
Charge la configuration du coordinateur depuis un fichier YAML et vérifie sa structure.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import pydantic
import yaml

from ..logging.interfaces import LogLevel
from .config_validator import ConfigValidator
from .interfaces import IConfigLoader, IConfigValidator, KeeperConfig


class ConfigIntegrityError(Exception):
    """Erreur d'intégrité de configuration."""

    pass


class ConfigLoader(IConfigLoader):
    """Chargement de la configuration depuis un fichier YAML."""

    def __init__(self, config_path: str = "fixtures/configs/keeper.yaml", validator: Optional[IConfigValidator] = None):
        self.config_path = Path(config_path)
        self._validator = validator or ConfigValidator()

    async def load(self) -> Dict[str, Any]:
        """
        Charge le fichier de configuration brut.

        Returns:
            Configuration sous forme de dictionnaire

        Raises:
            ConfigIntegrityError: Si fichier inexistant ou structure invalide
        """
        if not self.config_path.exists():
            raise ConfigIntegrityError(f"Configuration non trouvée: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigIntegrityError(f"Erreur de parsing YAML: {e}")
        except OSError as e:
            raise ConfigIntegrityError(f"Erreur de lecture fichier: {e}")

        if not isinstance(config, dict):
            raise ConfigIntegrityError("Configuration doit être un objet YAML")

        self._validate_basic_structure(config)

        return config

    async def load_config(self) -> KeeperConfig:
        """
        Charge, valide puis construit la configuration typée.

        Raises:
            ConfigIntegrityError: Si une règle bloquante est violée
        """
        raw = await self.load()
        keeper = dict(raw["keeper"])

        result = self._validator.validate(keeper)
        if not result.valid:
            details = "; ".join(f"{e.location}: {e.message}" for e in result.errors)
            raise ConfigIntegrityError(f"Configuration invalide: {details}")

        logging_section = raw.get("logging") or {}
        if "level" in logging_section:
            keeper["log_level"] = str(logging_section["level"]).upper()

        if "log_level" in keeper:
            try:
                LogLevel.from_name(str(keeper["log_level"]))
            except ValueError:
                raise ConfigIntegrityError(f"Niveau de log inconnu: {keeper['log_level']}")

        try:
            return KeeperConfig(**keeper)
        except pydantic.ValidationError as e:
            raise ConfigIntegrityError(f"Configuration invalide: {e}")

    def _validate_basic_structure(self, config: Dict[str, Any]) -> None:
        """Valide la structure de base de la configuration."""
        if "keeper" not in config:
            raise ConfigIntegrityError("Champ obligatoire manquant: keeper")

        if not isinstance(config["keeper"], dict):
            raise ConfigIntegrityError("keeper doit être un objet")

        logging_section = config.get("logging")
        if logging_section is not None and not isinstance(logging_section, dict):
            raise ConfigIntegrityError("logging doit être un objet")

        unknown = set(config["keeper"]) - set(KeeperConfig.model_fields)
        if unknown:
            raise ConfigIntegrityError(f"Champs inconnus dans keeper: {', '.join(sorted(unknown))}")
