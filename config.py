import os
import re
from dataclasses import dataclass
from typing import Tuple

import dotenv
import yaml

from chains import ChainDescriptor, get_descriptor, network_name
from errors import ConfigurationError

CONFIG_FILE = os.getenv('INDEXER_CONFIG', 'config.yml')

DEFAULTS = {
    'poll_interval': 12.0,
    'max_backoff': 300.0,
    'max_chunk_blocks': 5000,
    'max_range': 2000,
    'fetch_concurrency': 4,
    'rpc_timeout': 20.0,
    'rpc_max_attempts': 3,
    'rpc_backoff_base': 0.5,
    'rpc_backoff_max': 8.0,
    'reorg_check_depth': 64,
    'reorg_check_interval': 300.0,
    'max_rewind_blocks': 1000,
}

ENV_VAR = re.compile(r'\$\{(\w+)\}')


@dataclass(frozen=True)
class ChainInstance:
    descriptor: ChainDescriptor
    rpc_urls: Tuple[str, ...]
    l2_rpc_urls: Tuple[str, ...]
    start_block: int
    poll_interval: float
    max_backoff: float
    max_chunk_blocks: int
    max_range: int
    fetch_concurrency: int
    rpc_timeout: float
    rpc_max_attempts: int
    rpc_backoff_base: float
    rpc_backoff_max: float
    reorg_check_depth: int
    reorg_check_interval: float
    max_rewind_blocks: int

    @property
    def family(self):
        return self.descriptor.family

    @property
    def network(self):
        return self.descriptor.network

    @property
    def contract_address(self):
        return self.descriptor.contract_address

    @property
    def confirmation_depth(self):
        return self.descriptor.confirmation_depth


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str
    monitors: Tuple[ChainInstance, ...]

    def get_monitor(self, network):
        for monitor in self.monitors:
            if monitor.network == network:
                return monitor
        raise ConfigurationError(f"No monitor configured for network {network!r}")


def _expand(value, environ):
    if isinstance(value, str):
        def replace(match):
            name = match.group(1)
            if name not in environ:
                raise ConfigurationError(f"Environment variable {name} is referenced but not set")
            return environ[name]
        return ENV_VAR.sub(replace, value)
    if isinstance(value, list):
        return [_expand(item, environ) for item in value]
    if isinstance(value, dict):
        return {key: _expand(item, environ) for key, item in value.items()}
    return value


def _url_list(value):
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(url.strip() for url in value if url and url.strip())


def _number(network, key, value, kind):
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{network}: {key} must be a number, got {value!r}")
    if number < 0:
        raise ConfigurationError(f"{network}: {key} must not be negative")
    return number


def build_instance(entry, defaults, environ):
    network = entry.get('network')
    if not network and entry.get('chain') and entry.get('network_type'):
        network = network_name(entry['chain'], entry['network_type'])
    if not network:
        raise ConfigurationError(f"Monitor entry without a network: {entry!r}")

    descriptor = get_descriptor(
        network,
        family=entry.get('family'),
        contract_address=entry.get('contract_address'),
        deployment_block=entry.get('deployment_block'),
        confirmation_depth=entry.get('confirmation_depth'),
    )

    rpc_urls = _url_list(entry.get('rpc_urls') or entry.get('rpc_url'))
    if not rpc_urls:
        raise ConfigurationError(f"{network}: no RPC endpoint configured")

    l2_rpc_urls = _url_list(entry.get('l2_rpc_urls') or entry.get('l2_rpc_url'))
    if not l2_rpc_urls:
        # same variable names the original deployment used, e.g. ARBITRUM_SEPOLIA_RPC_URL
        l2_rpc_urls = _url_list(environ.get(f"{network.upper()}_RPC_URL"))
    if descriptor.needs_l2_rpc and not l2_rpc_urls:
        raise ConfigurationError(f"{network}: {descriptor.family.value} monitors need l2_rpc_urls")

    settings = dict(DEFAULTS)
    settings.update(defaults)
    settings.update({key: entry[key] for key in DEFAULTS if key in entry})
    values = {key: _number(network, key, settings[key], type(DEFAULTS[key])) for key in DEFAULTS}

    for key in ('max_chunk_blocks', 'max_range', 'fetch_concurrency', 'rpc_max_attempts'):
        if values[key] < 1:
            raise ConfigurationError(f"{network}: {key} must be at least 1")

    start_block = entry.get('start_block')
    if start_block is None:
        start_block = descriptor.deployment_block

    return ChainInstance(
        descriptor=descriptor,
        rpc_urls=rpc_urls,
        l2_rpc_urls=l2_rpc_urls,
        start_block=_number(network, 'start_block', start_block, int),
        **values,
    )


def _env_monitor(environ):
    # process-per-chain deployments configure one monitor entirely from the environment
    chain_name = environ.get('CHAIN_NAME')
    network_type = environ.get('CHAIN_TYPE')
    if not chain_name and not network_type:
        return None
    if not chain_name or not network_type:
        raise ConfigurationError("CHAIN_NAME and CHAIN_TYPE must be set together")

    entry = {'network': network_name(chain_name, network_type)}
    if environ.get('RPC_URL'):
        entry['rpc_urls'] = environ['RPC_URL']
    if environ.get('L2_RPC_URL'):
        entry['l2_rpc_urls'] = environ['L2_RPC_URL']
    if environ.get('START_BLOCK'):
        entry['start_block'] = environ['START_BLOCK']
    return entry


def load_config(path=None, environ=None):
    if environ is None:
        dotenv.load_dotenv()
        environ = dict(os.environ)

    cfg = {}
    config_path = path or CONFIG_FILE
    if os.path.isfile(config_path):
        with open(config_path, 'r') as ymlfile:
            cfg = yaml.safe_load(ymlfile) or {}
    elif path is not None:
        raise ConfigurationError(f"Config file not found: {path}")

    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")
    cfg = _expand(cfg, environ)

    defaults = cfg.get('defaults') or {}
    entries = list(cfg.get('monitors') or [])

    env_entry = _env_monitor(environ)
    if env_entry is not None:
        matching = [e for e in entries if e.get('network') == env_entry['network']]
        merged = dict(matching[0]) if matching else {}
        merged.update(env_entry)
        entries = [merged]

    if not entries:
        raise ConfigurationError("No monitors configured")

    monitors = tuple(build_instance(entry, defaults, environ) for entry in entries)
    networks = [monitor.network for monitor in monitors]
    duplicates = sorted({network for network in networks if networks.count(network) > 1})
    if duplicates:
        raise ConfigurationError(f"Networks configured more than once: {', '.join(duplicates)}")

    return Settings(
        database_url=environ.get('DB_URL') or cfg.get('database_url') or 'sqlite:///checkpoints.db',
        log_level=(environ.get('LOG_LEVEL') or cfg.get('log_level') or 'INFO').upper(),
        monitors=monitors,
    )
