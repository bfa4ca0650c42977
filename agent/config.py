"""Configuration loading and validation."""

import json
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from agent.exceptions import ConfigError


BACKEND_IDS = ("anthropic", "openai", "gemini", "ollama")
APPROVAL_MODES = ("conservative", "balanced", "trust")
VARIANTS = ("productivity", "balanced")

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4o",
    "gemini": "gemini-1.5-pro",
    "ollama": "llama3:8b",
}

DEFAULT_BASE_URLS = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "ollama": "http://localhost:11434",
}

API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GOOGLE_AI_API_KEY",
}

MODEL_ENV = {
    "anthropic": "ANTHROPIC_MODEL",
    "openai": "OPENAI_MODEL",
    "gemini": "GEMINI_MODEL",
    "ollama": "OLLAMA_MODEL",
}


@dataclass
class ProviderConfig:
    """Credentials and model id for one backend."""
    api_key: str = ""
    model: str = ""
    base_url: str = ""


@dataclass
class RetrySettings:
    """HTTP timeouts and retry policy shared by every backend."""
    connect_timeout: float = 5.0
    read_timeout: float = 120.0
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0


@dataclass
class AgentSettings:
    """Limits for the agent loop and its context window."""
    max_context_tokens: int = 100000
    max_response_tokens: int = 4096
    temperature: float = 0.7
    max_iterations: int = 10
    code_max_iterations: int = 20
    strict_context_budget: bool = False
    system_prompt: str = "You are a helpful assistant. Use the available tools when they help."


@dataclass
class ToolApprovalConfig:
    mode: str = "balanced"


@dataclass
class TieringConfig:
    """Configuration for local/cloud tier routing."""
    enabled: bool = False
    local_provider: str = "ollama"
    cloud_provider: str | None = None
    always_use_cloud: bool = False
    always_use_local: bool = False
    simple_threshold: int = 30
    complex_threshold: int = 60


@dataclass
class RateLimitConfig:
    per_minute: int = 30


@dataclass
class SecurityConfig:
    """Blocked resources and audit log location for the capability policy."""
    blocked_paths: list[str] = field(default_factory=lambda: [
        "~/.ssh/*",
        "~/.aws/*",
        "~/.config/*",
        "/etc/*",
        "/System/*",
        "C:\\Windows\\*",
    ])
    blocked_commands: list[str] = field(default_factory=lambda: [
        r"rm\s+-rf\s+/",
        r"sudo\s+rm",
        r"chmod\s+777",
        r"curl.*\|.*sh",
        r"wget.*\|.*sh",
        r"format\s+",
        r"mkfs\.",
    ])
    audit_log_path: str = "data/security/audit.jsonl"


@dataclass
class TelemetryConfig:
    """Configuration for telemetry and metrics logging."""
    enabled: bool = False
    log_dir: str = "./data/metrics"
    otel_enabled: bool = False
    otel_endpoint: str | None = None
    otel_service_name: str = "tiered-agents"


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        backend_id: ProviderConfig(
            model=DEFAULT_MODELS[backend_id],
            base_url=DEFAULT_BASE_URLS[backend_id],
        )
        for backend_id in BACKEND_IDS
    }


@dataclass
class AgentConfig:
    """Complete agent configuration."""
    providers: dict[str, ProviderConfig] = field(default_factory=_default_providers)
    provider_priority: list[str] = field(default_factory=lambda: ["anthropic", "openai", "ollama"])
    agent: AgentSettings = field(default_factory=AgentSettings)
    tool_approval: ToolApprovalConfig = field(default_factory=ToolApprovalConfig)
    tiering: TieringConfig = field(default_factory=TieringConfig)
    retry: RetrySettings = field(default_factory=RetrySettings)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    variant: str = "balanced"
    data_dir: str = "data"
    log_dir: str = "data/logs"
    log_level: str = "INFO"


def load_config(config_path: str = "config.json", env_file: str | None = ".env") -> AgentConfig:
    """Load configuration from a JSON file with defaults, then apply env overrides."""
    if env_file:
        load_dotenv(env_file, override=False)

    raw: dict = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load config from {config_path}: {e}")
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")

    data_dir = raw.get("data_dir", "data")
    if not isinstance(data_dir, str) or not data_dir.strip():
        raise ConfigError("data_dir must be a non-empty string")

    providers = _load_providers(raw.get("providers", {}))
    provider_priority = _load_priority(
        os.getenv("LLM_PROVIDER_PRIORITY") or raw.get("provider_priority", ["anthropic", "openai", "ollama"])
    )
    agent = _load_agent_settings(raw.get("agent", {}))

    approval_raw = raw.get("tool_approval", {})
    mode = os.getenv("TOOL_APPROVAL_MODE") or approval_raw.get("mode", "balanced")
    if mode not in APPROVAL_MODES:
        raise ConfigError(f"tool_approval.mode must be one of {', '.join(APPROVAL_MODES)}")
    tool_approval = ToolApprovalConfig(mode=mode)

    tiering = _load_tiering_settings(raw.get("tiering", {}))
    retry = _load_retry_settings(raw.get("retry", {}))

    rate_raw = raw.get("rate_limit", {})
    rate_limit = RateLimitConfig(
        per_minute=_coerce_int(rate_raw.get("per_minute", 30), "rate_limit.per_minute", 1),
    )

    security = _load_security_settings(raw.get("security", {}), data_dir)
    telemetry = _load_telemetry_settings(raw.get("telemetry", {}), data_dir)

    variant = raw.get("variant", "balanced")
    if variant not in VARIANTS:
        raise ConfigError(f"variant must be one of {', '.join(VARIANTS)}")
    if variant == "productivity":
        if tool_approval.mode == "balanced":
            tool_approval.mode = "conservative"
        tiering.enabled = True

    log_level = str(raw.get("log_level", os.getenv("LOG_LEVEL", "INFO"))).upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        raise ConfigError("log_level must be DEBUG, INFO, WARNING or ERROR")

    log_dir = raw.get("log_dir", os.path.join(data_dir, "logs"))
    for d in [data_dir, log_dir, telemetry.log_dir]:
        os.makedirs(d, exist_ok=True)

    return AgentConfig(
        providers=providers,
        provider_priority=provider_priority,
        agent=agent,
        tool_approval=tool_approval,
        tiering=tiering,
        retry=retry,
        rate_limit=rate_limit,
        security=security,
        telemetry=telemetry,
        variant=variant,
        data_dir=data_dir,
        log_dir=log_dir,
        log_level=log_level,
    )


def _load_providers(raw: dict) -> dict[str, ProviderConfig]:
    """Parse per-backend credentials, letting the environment fill in secrets."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("providers must be an object keyed by backend id")

    unknown = [key for key in raw if key not in BACKEND_IDS]
    if unknown:
        raise ConfigError(f"Unknown provider(s): {', '.join(unknown)}")

    providers: dict[str, ProviderConfig] = {}
    for backend_id in BACKEND_IDS:
        entry = raw.get(backend_id, {}) or {}
        if not isinstance(entry, dict):
            raise ConfigError(f"providers.{backend_id} must be an object")

        api_key = entry.get("api_key", "")
        env_key = API_KEY_ENV.get(backend_id)
        if env_key and os.getenv(env_key):
            api_key = os.getenv(env_key)

        model = os.getenv(MODEL_ENV[backend_id]) or entry.get("model", DEFAULT_MODELS[backend_id])
        base_url = entry.get("base_url", DEFAULT_BASE_URLS[backend_id])
        if backend_id == "ollama" and os.getenv("OLLAMA_BASE_URL"):
            base_url = os.getenv("OLLAMA_BASE_URL")

        for name, value in (("api_key", api_key), ("model", model), ("base_url", base_url)):
            if not isinstance(value, str):
                raise ConfigError(f"providers.{backend_id}.{name} must be a string")
        if not model.strip():
            raise ConfigError(f"providers.{backend_id}.model must be a non-empty string")

        providers[backend_id] = ProviderConfig(
            api_key=api_key.strip(),
            model=model.strip(),
            base_url=base_url.strip().rstrip("/"),
        )
    return providers


def _load_priority(raw: object) -> list[str]:
    """Parse the ordered backend list from a JSON list or a comma string."""
    if isinstance(raw, str):
        raw = [part.strip() for part in raw.split(",") if part.strip()]
    if not isinstance(raw, list) or not raw:
        raise ConfigError("provider_priority must be a non-empty list")

    priority: list[str] = []
    for backend_id in raw:
        if backend_id not in BACKEND_IDS:
            raise ConfigError(f"provider_priority contains unknown backend '{backend_id}'")
        if backend_id in priority:
            raise ConfigError(f"provider_priority lists '{backend_id}' more than once")
        priority.append(backend_id)
    return priority


def _load_agent_settings(raw: dict) -> AgentSettings:
    """Parse and validate agent loop settings."""
    max_context_tokens = _coerce_int(raw.get("max_context_tokens", 100000), "agent.max_context_tokens", 1000)
    max_response_tokens = _coerce_int(raw.get("max_response_tokens", 4096), "agent.max_response_tokens", 1)
    if max_response_tokens >= max_context_tokens:
        raise ConfigError("agent.max_response_tokens must be less than agent.max_context_tokens")

    temperature = _coerce_float(raw.get("temperature", 0.7), "agent.temperature", 0.0)
    if temperature > 1.0:
        raise ConfigError("agent.temperature must be <= 1.0")

    strict = raw.get("strict_context_budget", False)
    if not isinstance(strict, bool):
        raise ConfigError("agent.strict_context_budget must be a boolean")

    system_prompt = raw.get("system_prompt", AgentSettings().system_prompt)
    if not isinstance(system_prompt, str):
        raise ConfigError("agent.system_prompt must be a string")

    return AgentSettings(
        max_context_tokens=max_context_tokens,
        max_response_tokens=max_response_tokens,
        temperature=temperature,
        max_iterations=_coerce_int(raw.get("max_iterations", 10), "agent.max_iterations", 1),
        code_max_iterations=_coerce_int(raw.get("code_max_iterations", 20), "agent.code_max_iterations", 1),
        strict_context_budget=strict,
        system_prompt=system_prompt,
    )


def _load_tiering_settings(raw: dict) -> TieringConfig:
    """Parse and validate tier routing settings."""
    flags = {}
    for name in ("enabled", "always_use_cloud", "always_use_local"):
        value = raw.get(name, False)
        if not isinstance(value, bool):
            raise ConfigError(f"tiering.{name} must be a boolean")
        flags[name] = value
    if flags["always_use_cloud"] and flags["always_use_local"]:
        raise ConfigError("tiering.always_use_cloud and tiering.always_use_local are mutually exclusive")

    local_provider = raw.get("local_provider", "ollama")
    if local_provider not in BACKEND_IDS:
        raise ConfigError(f"tiering.local_provider must be one of {', '.join(BACKEND_IDS)}")

    cloud_provider = raw.get("cloud_provider")
    if cloud_provider is not None and cloud_provider not in BACKEND_IDS:
        raise ConfigError(f"tiering.cloud_provider must be one of {', '.join(BACKEND_IDS)}")
    if cloud_provider is not None and cloud_provider == local_provider:
        raise ConfigError("tiering.cloud_provider must differ from tiering.local_provider")

    simple_threshold = _coerce_int(raw.get("simple_threshold", 30), "tiering.simple_threshold", 0)
    complex_threshold = _coerce_int(raw.get("complex_threshold", 60), "tiering.complex_threshold", 1)
    if complex_threshold <= simple_threshold:
        raise ConfigError("tiering.complex_threshold must be greater than tiering.simple_threshold")

    return TieringConfig(
        enabled=flags["enabled"],
        local_provider=local_provider,
        cloud_provider=cloud_provider,
        always_use_cloud=flags["always_use_cloud"],
        always_use_local=flags["always_use_local"],
        simple_threshold=simple_threshold,
        complex_threshold=complex_threshold,
    )


def _load_retry_settings(raw: dict) -> RetrySettings:
    """Parse and validate HTTP timeout and retry settings."""
    base_delay = _coerce_float(raw.get("base_delay", 1.0), "retry.base_delay", 0.0)
    max_delay = _coerce_float(raw.get("max_delay", 60.0), "retry.max_delay", 0.0)
    if max_delay < base_delay:
        raise ConfigError("retry.max_delay must be >= retry.base_delay")

    return RetrySettings(
        connect_timeout=_coerce_float(raw.get("connect_timeout", 5.0), "retry.connect_timeout", 0.1),
        read_timeout=_coerce_float(raw.get("read_timeout", 120.0), "retry.read_timeout", 0.1),
        max_retries=_coerce_int(raw.get("max_retries", 3), "retry.max_retries", 1),
        base_delay=base_delay,
        max_delay=max_delay,
    )


def _load_security_settings(raw: dict, data_dir: str) -> SecurityConfig:
    """Parse blocked path/command patterns and the audit log path."""
    defaults = SecurityConfig()

    blocked_paths = raw.get("blocked_paths", defaults.blocked_paths)
    blocked_commands = raw.get("blocked_commands", defaults.blocked_commands)
    for name, values in (("blocked_paths", blocked_paths), ("blocked_commands", blocked_commands)):
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ConfigError(f"security.{name} must be a list of strings")

    audit_log_path = raw.get("audit_log_path", os.path.join(data_dir, "security", "audit.jsonl"))
    if not isinstance(audit_log_path, str) or not audit_log_path.strip():
        raise ConfigError("security.audit_log_path must be a non-empty string")

    return SecurityConfig(
        blocked_paths=list(blocked_paths),
        blocked_commands=list(blocked_commands),
        audit_log_path=audit_log_path,
    )


def _load_telemetry_settings(raw: dict, data_dir: str) -> TelemetryConfig:
    """Parse and validate telemetry settings."""
    enabled = raw.get("enabled", False)
    if not isinstance(enabled, bool):
        raise ConfigError("telemetry.enabled must be a boolean")

    log_dir = raw.get("log_dir", os.path.join(data_dir, "metrics"))
    if not isinstance(log_dir, str) or not log_dir.strip():
        raise ConfigError("telemetry.log_dir must be a non-empty string")

    otel_enabled = raw.get("otel_enabled", False)
    if not isinstance(otel_enabled, bool):
        raise ConfigError("telemetry.otel_enabled must be a boolean")

    otel_endpoint = raw.get("otel_endpoint")
    if otel_endpoint is not None and (not isinstance(otel_endpoint, str) or not otel_endpoint.strip()):
        raise ConfigError("telemetry.otel_endpoint must be a non-empty string if provided")

    otel_service_name = raw.get("otel_service_name", "tiered-agents")
    if not isinstance(otel_service_name, str) or not otel_service_name.strip():
        raise ConfigError("telemetry.otel_service_name must be a non-empty string")

    return TelemetryConfig(
        enabled=enabled,
        log_dir=log_dir,
        otel_enabled=otel_enabled,
        otel_endpoint=otel_endpoint.strip() if isinstance(otel_endpoint, str) else None,
        otel_service_name=otel_service_name.strip(),
    )


def _coerce_float(value: object, name: str, min_value: float) -> float:
    """Coerce config value to float with basic validation."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number")

    if value < min_value:
        raise ConfigError(f"{name} must be >= {min_value}")
    return value


def _coerce_int(value: object, name: str, min_value: int) -> int:
    """Coerce config value to int with basic validation."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer")

    if value < min_value:
        raise ConfigError(f"{name} must be >= {min_value}")
    return value
