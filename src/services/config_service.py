import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "appsettings.json"

# Environment variable -> (config attribute, appsettings.json key)
ENV_SETTINGS = {
    "AZDO_ORG": ("organization", "Organization"),
    "AZDO_PROJECT": ("project", "Project"),
    "AZDO_PAT": ("personal_access_token", "PersonalAccessToken"),
    "AZDO_USER_EMAIL": ("user_email", "UserEmail"),
}

# Request body key -> config attribute
REQUEST_OVERRIDES = {
    "ORGANIZATION": "organization",
    "PROJECT": "project",
    "AZURE_PAT": "personal_access_token",
    "USER_EMAIL": "user_email",
}


class AzureDevOpsConfigurationError(Exception):
    """Raised when the Azure DevOps connection settings are incomplete"""
    pass


@dataclass(frozen=True)
class AzDoConfig:
    organization: str = ""
    project: str = ""
    personal_access_token: str = ""
    user_email: str = ""

    def missing_fields(self) -> list:
        return [name for name, value in vars(self).items() if not (value or "").strip()]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()


def _read_settings_file(settings_path: str) -> Dict[str, Any]:
    """Read the "AzDo" section of a JSON settings file, or {} if there is no file"""
    if not os.path.isfile(settings_path):
        logger.debug(f"No settings file at {settings_path}")
        return {}

    with open(settings_path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise AzureDevOpsConfigurationError(f"Invalid settings file {settings_path}: {e}") from e

    if not isinstance(data, dict):
        raise AzureDevOpsConfigurationError(f"Invalid settings file {settings_path}: expected a JSON object")

    section = data.get("AzDo")
    if section is None:
        section = {}
    elif not isinstance(section, dict):
        raise AzureDevOpsConfigurationError(f"Invalid settings file {settings_path}: \"AzDo\" must be an object")
    logger.info(f"Loaded Azure DevOps settings from {settings_path}")
    return section


def load_config(settings_path: Optional[str] = None, required: bool = True) -> AzDoConfig:
    """
    Load Azure DevOps settings from the environment, falling back to a JSON file

    Args:
        settings_path: Path to the settings file (default AZDO_SETTINGS_FILE or appsettings.json)
        required: Raise when the result is incomplete

    Returns:
        AzDoConfig with environment values taking precedence over file values
    """
    env_values = {attr: os.environ.get(env_name, "").strip()
                  for env_name, (attr, _) in ENV_SETTINGS.items()}
    if all(env_values.values()):
        return AzDoConfig(**env_values)

    settings_path = settings_path or os.environ.get("AZDO_SETTINGS_FILE", DEFAULT_SETTINGS_FILE)
    file_values = _read_settings_file(settings_path)

    values = {}
    for attr, file_key in ENV_SETTINGS.values():
        values[attr] = env_values[attr] or str(file_values.get(file_key, "") or "").strip()

    config = AzDoConfig(**values)
    if required and not config.is_complete:
        raise AzureDevOpsConfigurationError(
            f"Azure DevOps configuration not found. Missing: {', '.join(config.missing_fields())}. "
            f"Set AZDO_ORG, AZDO_PROJECT, AZDO_PAT and AZDO_USER_EMAIL or provide {settings_path}."
        )
    return config


def apply_request_overrides(config: AzDoConfig, data: Dict[str, Any]) -> AzDoConfig:
    """Overlay credential values passed in an API request body"""
    overrides = {attr: str(data[key]).strip()
                 for key, attr in REQUEST_OVERRIDES.items() if data.get(key)}
    return replace(config, **overrides) if overrides else config
