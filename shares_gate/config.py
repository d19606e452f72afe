import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .utils import normalize_evm_address, normalize_sui_address

DEFAULT_SUI_RPC = "https://fullnode.mainnet.sui.io:443"


@dataclass
class EvmChainConfig:
    name: str
    rpc_url: str
    shares_contract: str
    start_block: int
    batch_blocks: int = 100


@dataclass
class SuiChainConfig:
    name: str
    rpc_url: str
    package_id: str
    shares_trading_object_id: str
    page_limit: int = 100
    start_cursor: Optional[str] = None


@dataclass
class AppConfig:
    telegram_bot_token: str
    telegram_group_id: str
    telegram_api_url: str = "https://api.telegram.org"
    sqlite_path: str = "./data/shares_gate.db"
    default_chain: str = "monad"
    evm: Optional[EvmChainConfig] = None
    sui: Optional[SuiChainConfig] = None
    rpc_timeout_sec: int = 15
    max_rpc_retries: int = 3
    idle_sleep_sec: float = 60
    retry_sleep_sec: float = 10
    pace_sleep_sec: float = 1
    shutdown_drain_sec: float = 15
    clear_gate_on_ungate: bool = False
    log_level: str = "info"
    api_host: str = "0.0.0.0"
    api_port: int = 8088
    cors_allow_origins: List[str] = field(default_factory=list)

    def chain_names(self) -> List[str]:
        names = []
        if self.evm:
            names.append(self.evm.name)
        if self.sui:
            names.append(self.sui.name)
        return names


def _required(raw: Dict[str, Any], key: str, section: str = "") -> str:
    value = raw.get(key)
    if value is None or not str(value).strip():
        where = f"{section}.{key}" if section else key
        raise ConfigError(f"{where} not set")
    return str(value).strip()


def _int(raw: Dict[str, Any], key: str, default: Any, minimum: int = 0) -> int:
    try:
        value = int(raw.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number") from e
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def _float(raw: Dict[str, Any], key: str, default: float) -> float:
    try:
        value = float(raw.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number") from e
    if value < 0:
        raise ConfigError(f"{key} must be >= 0")
    return value


def _bool(raw: Dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _load_evm(raw: Dict[str, Any]) -> EvmChainConfig:
    contract = _required(raw, "SHARES_CONTRACT_ADDRESS", "EVM")
    try:
        contract = normalize_evm_address(contract)
    except ValueError as e:
        raise ConfigError(f"Invalid contract address: {contract}") from e
    if "START_BLOCK" not in raw:
        raise ConfigError("EVM.START_BLOCK not set")
    return EvmChainConfig(
        name=str(raw.get("NAME", "monad")).strip(),
        rpc_url=_required(raw, "CHAIN_RPC", "EVM"),
        shares_contract=contract,
        start_block=_int(raw, "START_BLOCK", 0),
        batch_blocks=_int(raw, "BLOCK_BATCH_SIZE", 100, minimum=1),
    )


def _load_sui(raw: Dict[str, Any]) -> SuiChainConfig:
    package_id = _required(raw, "SUI_CONTRACT", "SUI")
    object_id = _required(raw, "SUI_SHARES_TRADING_OBJECT_ID", "SUI")
    try:
        package_id = "0x" + normalize_sui_address(package_id)
        object_id = "0x" + normalize_sui_address(object_id)
    except ValueError as e:
        raise ConfigError(f"Invalid Sui object id: {e}") from e
    start_cursor = str(raw.get("START_CURSOR", "")).strip() or None
    return SuiChainConfig(
        name=str(raw.get("NAME", "sui")).strip(),
        rpc_url=str(raw.get("SUI_RPC", DEFAULT_SUI_RPC)).strip(),
        package_id=package_id,
        shares_trading_object_id=object_id,
        page_limit=_int(raw, "PAGE_LIMIT", 100, minimum=1),
        start_cursor=start_cursor,
    )


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    for section in ("EVM", "SUI"):
        if raw.get(section) and not isinstance(raw[section], dict):
            raise ConfigError(f"{section} must be a JSON object")
    evm = _load_evm(raw["EVM"]) if raw.get("EVM") else None
    sui = _load_sui(raw["SUI"]) if raw.get("SUI") else None
    if evm is None and sui is None:
        raise ConfigError("at least one of EVM or SUI must be configured")
    if evm and sui and evm.name == sui.name:
        raise ConfigError(f"chain names must be unique: {evm.name}")

    default_chain = str(raw.get("DEFAULT_CHAIN", "monad")).strip()
    cfg_names = [c.name for c in (evm, sui) if c]
    if default_chain not in cfg_names:
        default_chain = cfg_names[0]

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    return AppConfig(
        telegram_bot_token=_required(raw, "TELEGRAM_BOT_TOKEN"),
        telegram_group_id=_required(raw, "TELEGRAM_GROUP_ID"),
        telegram_api_url=str(raw.get("TELEGRAM_API_URL", "https://api.telegram.org")).rstrip("/"),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/shares_gate.db")),
        default_chain=default_chain,
        evm=evm,
        sui=sui,
        rpc_timeout_sec=_int(raw, "RPC_TIMEOUT_SEC", 15, minimum=1),
        max_rpc_retries=_int(raw, "MAX_RPC_RETRIES", 3, minimum=1),
        idle_sleep_sec=_float(raw, "IDLE_SLEEP_SEC", 60),
        retry_sleep_sec=_float(raw, "RETRY_SLEEP_SEC", 10),
        pace_sleep_sec=_float(raw, "PACE_SLEEP_SEC", 1),
        shutdown_drain_sec=_float(raw, "SHUTDOWN_DRAIN_SEC", 15),
        clear_gate_on_ungate=_bool(raw, "CLEAR_GATE_ON_UNGATE", False),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "0.0.0.0")),
        api_port=_int(raw, "API_PORT", 8088, minimum=1),
        cors_allow_origins=cors_allow_origins,
    )


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a JSON object")
    return parse_config(raw)
