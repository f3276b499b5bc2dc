import copy
import os
from typing import Any, Dict

import yaml

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'foxess': {
        'base_url': 'https://www.foxesscloud.com',
    },
    'amber': {
        'base_url': 'https://api.amber.com.au/v1',
        'forecast_intervals': 288,
    },
    'ote': {
        'import_markup': 0.0,
        'export_markup': 0.0,
    },
    'weather': {
        'forecast_days': 2,
    },
    'automation': {
        'interval_seconds': 60,
        'default_timezone': 'Australia/Sydney',
        'error_blackout_minutes': 5,
        'fetch_timeout_seconds': 8,
        'device_timeout_seconds': 10,
        'verify_delay_seconds': 2,
    },
    'cache': {
        'telemetry_ttl_seconds': 300,
        'price_ttl_seconds': 60,
        'weather_ttl_seconds': 1800,
    },
    'defaults': {
        'cooldown_minutes': 5,
        'duration_minutes': 30,
        'power_watts': 5000,
        'min_soc_on_grid': 20,
        'force_discharge_soc': 35,
        'max_soc': 90,
    },
    'storage': {
        'path': 'data',
    },
}

# (env var, section, key)
ENV_OVERRIDES = [
    ('FOXESS_TOKEN', 'foxess', 'token'),
    ('AMBER_API_KEY', 'amber', 'api_key'),
    ('ESS_STORAGE_PATH', 'storage', 'path'),
]


def load_env() -> None:
    env_path = '.env'
    if os.path.exists(env_path):
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ[key] = value


class Config:
    def __init__(self, config_path: str = 'config.yaml'):
        self.config_path = config_path
        load_env()
        self.data = self.load_config()
        self.validate_config()

    def load_config(self) -> Dict:
        data = copy.deepcopy(DEFAULTS)
        if os.path.exists(self.config_path):
            with open(self.config_path) as f:
                loaded = yaml.safe_load(f) or {}
            for section, values in loaded.items():
                if isinstance(values, dict):
                    data.setdefault(section, {}).update(values)
                else:
                    data[section] = values
        # Override with environment variables if available
        for env_key, section, key in ENV_OVERRIDES:
            if env_key in os.environ:
                data.setdefault(section, {})[key] = os.environ[env_key]
        return data

    def validate_config(self) -> None:
        required_keys = [('foxess', 'token')]
        for section, key in required_keys:
            if not self.data.get(section, {}).get(key):
                raise ValueError(f"{section}.{key} not found in config")
        if int(self.section('automation')['interval_seconds']) <= 0:
            raise ValueError("automation.interval_seconds must be positive")

    def section(self, name: str) -> Dict[str, Any]:
        return self.data.get(name) or {}

    def __getitem__(self, key):
        return self.data[key]

    def get(self, key, default=None):
        return self.data.get(key, default)
