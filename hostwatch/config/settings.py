"""Configuration management"""

import os
import warnings
import yaml
from pathlib import Path
from typing import Dict, Any


def get_default_config() -> Dict[str, Any]:
    """Get default configuration"""
    return {
        'engine': {
            'hostname': 'auto',
            'cid': None,
            'log_level': 'INFO',
            'log_file': None,
            'log_format': 'text',
        },
        'evaluation': {
            'interval': 30,
            'workers': 4,
            'cleanup_every_passes': 100,
        },
        'prometheus': {
            'enabled': False,
            'port': 9110,
            'host': '0.0.0.0',
        },
        'resource_limits': {
            'max_cpu_percent': 5.0,
            'max_memory_mb': 200,
            'check_interval': 60,
            'action_on_exceed': 'log',  # log or stop
        },
        'samples': {
            'type': 'sqlite',
            'sqlite_path': './data/samples.db',
        },
        'storage': {
            'type': 'sqlite',
            'sqlite_path': './data/incidents.db',
            'retention_days': 30,
        },
        'rules': {
            'rules_dir': None,
        },
        'notifications': {
            'send_resolved_notifications': False,
            'channels': {
                'slack': {
                    'enabled': False,
                    'webhook_url': '',
                    'channel': '#alerts',
                    'username': 'hostwatch',
                    'icon_emoji': ':rotating_light:',
                },
                'webhook': {
                    'enabled': False,
                    'url': '',
                    'method': 'POST',
                    'headers': {},
                    'timeout': 10,
                },
            },
        },
    }


def load_config(config_path: str = None) -> Dict[str, Any]:
    """
    Load configuration from file and environment variables

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary
    """
    config = get_default_config()

    if config_path:
        if not Path(config_path).exists():
            raise ValueError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                yaml_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        if yaml_config:
            config = merge_configs(config, yaml_config)

    config = override_from_env(config)

    validate_config(config)

    return config


def merge_configs(base: Dict, override: Dict) -> Dict:
    """Recursively merge two configuration dictionaries"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value
    return result


def override_from_env(config: Dict) -> Dict:
    """Override configuration from environment variables"""

    # Engine settings
    if 'HOSTWATCH_CID' in os.environ:
        config['engine']['cid'] = os.environ['HOSTWATCH_CID']
    if 'LOG_LEVEL' in os.environ:
        config['engine']['log_level'] = os.environ['LOG_LEVEL'].upper()
    if 'LOG_FILE' in os.environ:
        config['engine']['log_file'] = os.environ['LOG_FILE']
    if 'LOG_FORMAT' in os.environ:
        config['engine']['log_format'] = os.environ['LOG_FORMAT'].lower()

    # Evaluation settings
    if 'EVALUATION_INTERVAL' in os.environ:
        config['evaluation']['interval'] = int(os.environ['EVALUATION_INTERVAL'])
    if 'EVALUATION_WORKERS' in os.environ:
        config['evaluation']['workers'] = int(os.environ['EVALUATION_WORKERS'])

    # Prometheus settings
    if 'PROMETHEUS_PORT' in os.environ:
        config['prometheus']['port'] = int(os.environ['PROMETHEUS_PORT'])
    if 'PROMETHEUS_HOST' in os.environ:
        config['prometheus']['host'] = os.environ['PROMETHEUS_HOST']

    # Paths
    if 'SAMPLES_DB' in os.environ:
        config['samples']['sqlite_path'] = os.environ['SAMPLES_DB']
    if 'INCIDENTS_DB' in os.environ:
        config['storage']['sqlite_path'] = os.environ['INCIDENTS_DB']
    if 'RULES_DIR' in os.environ:
        config['rules']['rules_dir'] = os.environ['RULES_DIR']

    return config


def validate_config(config: Dict):
    """
    Validate configuration values

    Raises:
        ValueError: If configuration is invalid
    """
    valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    log_level = config['engine']['log_level'].upper()
    if log_level not in valid_log_levels:
        raise ValueError(f"Invalid log level: {log_level}. Must be one of {valid_log_levels}")

    log_format = config['engine']['log_format']
    if log_format not in ('text', 'json'):
        raise ValueError(f"Invalid log format: {log_format}. Must be 'text' or 'json'")

    interval = config['evaluation']['interval']
    if interval <= 0:
        raise ValueError(f"Invalid evaluation interval: {interval}. Must be > 0")
    if interval < 1:
        warnings.warn(f"Evaluation interval is very aggressive: {interval}s")

    workers = config['evaluation']['workers']
    if not (0 < workers <= 256):
        raise ValueError(f"Invalid evaluation workers: {workers}. Must be between 1 and 256")

    port = config['prometheus']['port']
    if not (1 <= port <= 65535):
        raise ValueError(f"Invalid Prometheus port: {port}. Must be between 1 and 65535")

    max_cpu = config['resource_limits']['max_cpu_percent']
    if max_cpu <= 0:
        raise ValueError(f"Invalid max_cpu_percent: {max_cpu}. Must be > 0")

    max_memory = config['resource_limits']['max_memory_mb']
    if max_memory <= 0:
        raise ValueError(f"Invalid max_memory_mb: {max_memory}. Must be > 0")

    valid_actions = ['log', 'stop']
    action = config['resource_limits']['action_on_exceed']
    if action not in valid_actions:
        raise ValueError(f"Invalid action_on_exceed: {action}. Must be one of {valid_actions}")

    for section in ('samples', 'storage'):
        storage_type = config[section].get('type', 'sqlite')
        if storage_type != 'sqlite':
            raise ValueError(f"Unsupported {section} type: {storage_type}. Only 'sqlite' is currently supported")

    retention_days = config['storage'].get('retention_days', 30)
    if retention_days < 1:
        raise ValueError(f"Invalid retention_days: {retention_days}. Must be >= 1")

    rules_dir = config['rules'].get('rules_dir')
    if rules_dir and not Path(rules_dir).is_dir():
        raise ValueError(f"Rules directory not found: {rules_dir}")

    channels = config['notifications']['channels']
    if channels['slack'].get('enabled') and not channels['slack'].get('webhook_url'):
        raise ValueError("Slack channel enabled but webhook_url not set")

    if channels['webhook'].get('enabled'):
        if not channels['webhook'].get('url'):
            raise ValueError("Webhook channel enabled but url not set")
        method = channels['webhook'].get('method', 'POST').upper()
        if method not in ('POST', 'PUT'):
            raise ValueError(f"Invalid webhook method: {method}. Must be POST or PUT")
