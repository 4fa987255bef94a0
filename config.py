import copy
import logging
import os

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yml")

# Secrets are read from the environment only, never from config.yml.
API_KEY_ENV_VARS = {
    "gemini": "GOOGLE_GENERATIVE_AI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
}


class Config:
    """Configuration loaded from config.yml and merged over defaults."""

    DEFAULTS = {
        "llm": {
            "provider": "gemini",
            "model": None,
            "temperature": 0.7,
            "max_tokens": 2000,
            "timeout_seconds": 60.0,
        },
        "agent": {
            "max_iterations": 10,
            "iteration_delay_seconds": 0.5,
            "rate_limit_backoff_seconds": 2.0,
            "initial_log_count": 5,
        },
        "memory": {
            "max_tokens": 8000,
        },
        "tickets": {
            "path": "data/tickets.json",
        },
        "sessions": {
            "ttl_seconds": 3600,
            "cleanup_interval_seconds": 300,
        },
        "log_sets": {
            "directory": "log_sets",
        },
        "slack": {
            "alert_channel": "",
        },
        "logging": {
            "level": "INFO",
        },
    }

    def __init__(self, config_path=None):
        self._config = copy.deepcopy(self.DEFAULTS)

        if config_path is not None:
            try:
                with open(config_path, "r") as f:
                    user_config = yaml.safe_load(f)

                if user_config and isinstance(user_config, dict):
                    self._config = self._deep_merge(self._config, user_config)
            except FileNotFoundError:
                pass
            except yaml.YAMLError:
                logger.warning("Invalid YAML in %s, using defaults", config_path)

        self._apply_env_overrides()

    @staticmethod
    def _deep_merge(base, override):
        """Recursively merge override dict into base dict."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    def _apply_env_overrides(self):
        provider = os.getenv("AI_PROVIDER")
        if provider:
            self._config["llm"]["provider"] = provider
        tickets_path = os.getenv("TICKETS_PATH")
        if tickets_path:
            self._config["tickets"]["path"] = tickets_path

    def __getitem__(self, key):
        return self._config[key]


def get_api_key(provider: str) -> str | None:
    env_var = API_KEY_ENV_VARS.get(provider)
    if not env_var:
        return None
    return os.getenv(env_var)


def load_config(config_path: str | None = CONFIG_PATH) -> Config:
    return Config(config_path)
