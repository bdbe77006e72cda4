import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console

PROVIDER_GOOGLE = "google"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OPENAI = "openai"
PROVIDER_OPENROUTER = "openrouter"

# Un-prefixed environment variables accepted for provider credentials
PROVIDER_KEY_ENV_VARS: Dict[str, tuple[str, ...]] = {
    PROVIDER_GOOGLE: ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    PROVIDER_ANTHROPIC: ("ANTHROPIC_API_KEY",),
    PROVIDER_OPENAI: ("OPENAI_API_KEY",),
    PROVIDER_OPENROUTER: ("OPENROUTER_API_KEY",),
}

logger = logging.getLogger(__name__)
console = Console()


def get_default_config_dir() -> Path:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(xdg_config_home) / "llm-compact"


def get_default_cache_dir() -> Path:
    xdg_cache_home = os.environ.get("XDG_CACHE_HOME", os.path.expanduser("~/.cache"))
    return Path(xdg_cache_home) / "llm-compact"


def get_default_models_yaml_path() -> Path:
    env_path = os.environ.get("LLM_COMPACT_MODELS_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return get_default_config_dir() / "models.yaml"


def get_dotenv_path() -> Path:
    env_override = os.environ.get("LLM_COMPACT_ENV_FILE")
    if env_override:
        return Path(env_override).expanduser().resolve()
    return get_default_config_dir() / ".env"


DOTENV_PATH = get_dotenv_path()


class Config(BaseSettings):
    # --- Token budgeting --- #
    CHARS_PER_TOKEN: float = Field(default=3.5, description="Characters per estimated token")
    CHUNK_TARGET_TOKENS: int = Field(default=8000, description="Target size of one compaction chunk")
    FULL_CONTEXT_THRESHOLD: int = Field(default=100_000, description="Below this many tokens the transcript is summarized in one call")
    HIERARCHICAL_THRESHOLD: int = Field(default=500_000, description="At or above this many tokens the hierarchical strategy is used")

    # --- Compaction --- #
    MAP_CONCURRENCY: int = Field(default=1, description="Concurrent map calls per session (1 = sequential, in order)")
    HIERARCHICAL_MAX_EXTRA_PASSES: int = Field(default=1, description="Extra map-reduce passes allowed on an oversized reduced summary")

    # --- Generation façade --- #
    RETRY_BUDGET: int = Field(default=3, description="Attempts against the primary provider")
    RETRY_DELAY_BASE_MS: int = Field(default=1000, description="Linear backoff base between attempts")
    FALLBACK_RETRY_BUDGET: int = Field(default=2, description="Attempts against each fallback provider")
    REQUEST_TIMEOUT_SECONDS: float = Field(default=120.0, description="Timeout for one generation attempt")
    PROVIDER_CACHE_TTL_SECONDS: float = Field(default=5.0, description="How long provider instances are cached")

    # --- Overview generation --- #
    SECTION_CONCURRENCY: int = Field(default=3, description="Concurrent section generation calls")
    STRUCTURE_INPUT_TOKENS: int = Field(default=8000, description="Input budget for the outline call")
    SECTION_INPUT_TOKENS: int = Field(default=6000, description="Input budget for one section call")
    GENERATE_DIAGRAMS: bool = Field(default=True, description="Generate mermaid diagrams for diagram sections")

    # --- Storage / files --- #
    DATABASE_URL: str = Field(
        default=f"sqlite:///{get_default_cache_dir() / 'compact.db'}",
        description="SQLAlchemy URL for sessions, results and usage",
    )
    MODELS_CONFIG_PATH: str = Field(default=str(get_default_models_yaml_path()), description="Optional YAML overriding default models per provider and role")
    TRANSCRIPTS_DIR: str = Field(default=str(get_default_cache_dir() / "transcripts"), description="Root directory for JSON transcripts")

    # --- Provider credentials --- #
    GOOGLE_API_KEY: Optional[str] = Field(default=None)
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENROUTER_API_KEY: Optional[str] = Field(default=None)

    # --- UI --- #
    VERBOSE: bool = Field(default=False, description="Verbose mode")
    DEBUG: bool = Field(default=False, description="Enable raw debug logging output")

    model_overrides: Dict[str, Dict[str, str]] = Field(default_factory=dict, exclude=True)

    model_config = SettingsConfigDict(
        env_prefix="LLM_COMPACT_",
        env_file=DOTENV_PATH,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra='ignore',
        protected_namespaces=(),
    )

    def __init__(self, **values: Any):
        super().__init__(**values)
        self._load_models_config()

    def _load_models_config(self) -> None:
        """Load per-provider default model overrides.

        The file looks like::

            models:
              openai:
                compact: gpt-4.1-mini
        """
        config_path = Path(self.MODELS_CONFIG_PATH).expanduser()
        if not config_path.is_file():
            self.model_overrides = {}
            return

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            console.print(f"[bold red]Error parsing YAML file {config_path}:[/bold red] {e}")
            self.model_overrides = {}
            return

        models = loaded_data.get("models") if isinstance(loaded_data, dict) else None
        if not isinstance(models, dict):
            console.print(f"[bold red]Warning:[/bold red] Invalid format in {config_path}. Missing top-level 'models' dictionary.")
            self.model_overrides = {}
            return

        self.model_overrides = {
            str(provider): {str(role): str(model) for role, model in (roles or {}).items()}
            for provider, roles in models.items()
            if isinstance(roles, dict)
        }

    def get_api_key(self, provider_id: str) -> str | None:
        """Resolve a provider key: prefixed setting first, then the provider's usual env var."""
        value = getattr(self, f"{provider_id.upper()}_API_KEY", None)
        if value and value.strip():
            return value.strip()
        for env_name in PROVIDER_KEY_ENV_VARS.get(provider_id, ()):
            env_value = os.getenv(env_name)
            if env_value and env_value.strip():
                return env_value.strip()
        return None


def _validate_setting(name: str, value: str) -> Optional[str]:
    """Return an error message if ``value`` cannot be coerced to the field's type."""
    annotation = Config.model_fields[name].annotation
    try:
        TypeAdapter(annotation).validate_python(value)
    except ValidationError as e:
        return e.errors()[0].get("msg", str(e))
    return None


def set_config_value(key: str, value: str, config: Config) -> bool:
    """Write ``key=value`` into the .env file the config was loaded from.

    The key is matched case-insensitively against the ``Config`` fields and
    the value is type-checked before anything is written. An existing entry
    is replaced in place; otherwise the entry is appended.
    """
    fields = {name.upper(): name for name in Config.model_fields}
    name = fields.get(key.upper())
    if name is None:
        console.print(f"[bold red]Unknown setting '{key}'.[/bold red] Known settings: {', '.join(sorted(fields))}")
        return False

    problem = _validate_setting(name, value)
    if problem:
        console.print(f"[bold red]Invalid value for {name}:[/bold red] {problem}")
        return False

    env_path = Path(config.model_config["env_file"])
    env_var = f"{config.model_config['env_prefix']}{name}".upper()
    entry = f"{env_var}={value}\n"

    try:
        existing = env_path.read_text(encoding="utf-8").splitlines(keepends=True) if env_path.is_file() else []
    except OSError as e:
        console.print(f"[bold red]Cannot read {env_path}:[/bold red] {e}")
        return False

    replaced = [entry if line.split("=", 1)[0].strip().upper() == env_var else line for line in existing]
    if entry not in replaced:
        if replaced and not replaced[-1].endswith("\n"):
            replaced[-1] += "\n"
        replaced.append(entry)

    try:
        env_path.parent.mkdir(parents=True, exist_ok=True)
        env_path.write_text("".join(replaced), encoding="utf-8")
    except OSError as e:
        console.print(f"[bold red]Cannot write {env_path}:[/bold red] {e}")
        return False
    logger.info("Set %s in %s", env_var, env_path)
    return True
