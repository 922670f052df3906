"""
Runtime configuration, logging setup and persisted policy preferences.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .errors import PolicyValidationError
from .policy import Policy

LOG_LEVEL = os.getenv('TOKENWIRE_LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = os.getenv('TOKENWIRE_LOG_FORMAT', '%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger('tokenwire')

DEFAULT_SETTINGS_PATH = Path.home() / ".tokenwire" / "settings.json"
DEFAULT_MIRROR_PATH = Path(tempfile.gettempdir()) / "tokenwire" / "mirror.db"
DEFAULT_PROXY_CONFIG_PATH = Path(__file__).parent / ".proxy_config.json"


def setup_logging():
    """Configure logging once."""
    if logger.handlers or logging.getLogger().handlers:
        return
    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format=LOG_FORMAT)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.info('Logging initialized (level=%s)', LOG_LEVEL)


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value in ('1', 'true', 'TRUE', 'yes', 'YES')


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, '').split(',') if item.strip()]


@dataclass
class AppConfig:
    host: str = "127.0.0.1"
    port: int = 5000
    settings_path: Path = DEFAULT_SETTINGS_PATH
    mirror_path: Path = DEFAULT_MIRROR_PATH
    proxy_config_path: Path = DEFAULT_PROXY_CONFIG_PATH
    proxy_port: int = 8080
    auto_adopt_context: bool = True
    # Browser origins allowed to call the API cross-origin; none by default
    allowed_origins: List[str] = field(default_factory=list)

    @property
    def backend_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            host=os.getenv('TOKENWIRE_HOST', '127.0.0.1'),
            port=int(os.getenv('TOKENWIRE_PORT', '5000')),
            settings_path=Path(os.getenv('TOKENWIRE_SETTINGS_PATH', str(DEFAULT_SETTINGS_PATH))).expanduser(),
            mirror_path=Path(os.getenv('TOKENWIRE_MIRROR_PATH', str(DEFAULT_MIRROR_PATH))).expanduser(),
            proxy_config_path=Path(os.getenv('TOKENWIRE_PROXY_CONFIG', str(DEFAULT_PROXY_CONFIG_PATH))).expanduser(),
            proxy_port=int(os.getenv('TOKENWIRE_PROXY_PORT', '8080')),
            auto_adopt_context=_env_flag('TOKENWIRE_AUTO_ADOPT', True),
            allowed_origins=_env_list('TOKENWIRE_ALLOWED_ORIGINS'),
        )


def load_policy(path: Path) -> Policy:
    """Load saved preferences; anything unreadable falls back to the defaults."""
    if not path.exists():
        return Policy()
    try:
        return Policy.from_dict(json.loads(path.read_text()))
    except (OSError, ValueError) as e:
        logger.warning('Ignoring saved settings at %s: %s', path, e)
    except PolicyValidationError as e:
        logger.warning('Ignoring invalid saved settings at %s: %s', path, e.errors)
    return Policy()


def save_policy(path: Path, policy: Policy):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(policy.to_dict(), indent=2))
    logger.debug('Settings saved to %s', path)
