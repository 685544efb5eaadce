"""
# config/app_config.py

Module Contract
- Purpose: Central configuration loader/normalizer. Reads YAML (optional), resolves ${section.key} references, fills defaults, applies env overrides, and exposes module-level constants for the analysis pipeline.
- Inputs:
  - Optional YAML (config.yaml) at several search paths
  - Environment variables: ANALYSIS_API_BASE_URL, ANALYSIS_API_TOKEN, CONVERSATION_DIR, OPENAI_API_KEY, TITLE_MODEL, TITLE_MODEL_BASE_URL, LOG_LEVEL
- Outputs:
  - Module-level constants: API endpoints/timeouts, size and context limits, pacing delays, title model settings, greeting depth.
- Key functions:
  - load_yaml_config(config_path) -> dict: tolerant loader with variable resolution
  - ensure_config_defaults(config) -> dict: fills missing sections/keys
  - apply_env_overrides(config) -> dict: environment wins over YAML
- Side effects:
  - Creates the conversation directory on import so the JSON store can persist.
- Error handling:
  - Logs and falls back to defaults if the file is missing or malformed.
"""
import os
import re
import yaml
from pathlib import Path
from utils.logging_utils import get_logger

logger = get_logger("config")

# --------------------------------------------------------------------
# Variable resolution
# --------------------------------------------------------------------

def resolve_vars(config: dict) -> dict:
    """
    Recursively resolves placeholder variables in the config like ${section.key}.
    """
    if not isinstance(config, dict):
        return config

    def get_value_by_path(path: str, conf_dict: dict):
        value = conf_dict
        for key in path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value

    def resolve_value(value, conf_dict):
        if isinstance(value, str):
            for match in re.findall(r"\$\{([^}]+)\}", value):
                replacement = get_value_by_path(match, conf_dict)
                if replacement is not None:
                    value = value.replace(f"${{{match}}}", str(replacement))
            return value
        elif isinstance(value, dict):
            return {k: resolve_value(v, conf_dict) for k, v in value.items()}
        elif isinstance(value, list):
            return [resolve_value(item, conf_dict) for item in value]
        return value

    # Multiple passes to resolve nested references
    for _ in range(5):
        prev = str(config)
        config = resolve_value(config, config)
        if str(config) == prev:
            break

    return config

# --------------------------------------------------------------------
# YAML loading
# --------------------------------------------------------------------

def load_yaml_config(config_path="config.yaml"):
    """Load configuration from YAML file with variable substitution."""
    paths_to_try = list(dict.fromkeys([
        Path(config_path),
        Path(__file__).parent / config_path,
        Path(__file__).parent.parent / config_path,
        Path.cwd() / config_path,
    ]))

    config = {}
    for path in paths_to_try:
        if path.exists():
            logger.info(f"Loading config from: {path}")
            try:
                with open(path, "r", encoding="utf-8") as f:
                    config = yaml.safe_load(f)
                if not isinstance(config, dict):
                    logger.error("Config file is not a valid dictionary.")
                    config = {}
                break
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error loading config: {e}")
                config = {}

    if not config:
        logger.warning(f"Config file not found in any of: {paths_to_try}, using defaults.")

    return resolve_vars(config)

# --------------------------------------------------------------------
# Defaults
# --------------------------------------------------------------------

def ensure_config_defaults(config):
    """Ensure every section the pipeline reads has a value after resolution."""
    app = config.setdefault("app", {})
    app.setdefault("name", "video-analysis-orchestrator")
    app.setdefault("data_dir", "./data")
    app.setdefault("log_file", "analysis_debug.log")
    existing_dir = app.get("conversation_dir")
    if not existing_dir or "${" in str(existing_dir):
        app["conversation_dir"] = os.path.join(app["data_dir"], "conversations")
        logger.info(f"Set default conversation_dir to: {app['conversation_dir']}")

    api = config.setdefault("api", {})
    api.setdefault("base_url", "http://localhost:3000")
    api.setdefault("token", "")
    api.setdefault("timeout_s", 30.0)
    api.setdefault("stream_timeout_s", 300.0)
    api.setdefault("upload_timeout_s", 600.0)
    api.setdefault("max_connections", 20)
    api.setdefault("max_keepalive_connections", 5)
    api.setdefault("upload_chunk_bytes", 256 * 1024)
    paths = api.setdefault("paths", {})
    paths.setdefault("analysis", "/api/llm")
    paths.setdefault("upload_slot", "/api/s3/upload-url")
    paths.setdefault("download_url", "/api/s3/download-url")
    paths.setdefault("convert", "/api/convert-video")
    paths.setdefault("tasks", "/api/tasks")
    paths.setdefault("vision", "/api/shark/analyze")

    limits = config.setdefault("limits", {})
    limits.setdefault("max_video_mb", 100)
    limits.setdefault("max_history_bytes", 18 * 1024 * 1024)

    context = config.setdefault("context", {})
    context.setdefault("max_context_tokens", 5000)
    context.setdefault("simple_followup_tokens", 1500)
    context.setdefault("simple_followup_max_turns", 2)
    context.setdefault("fallback_context_tokens", 2000)

    pacing = config.setdefault("pacing", {})
    pacing.setdefault("studio_prompt_delay_ms", 300)
    pacing.setdefault("library_message_delay_ms", 100)
    pacing.setdefault("reveal_chunk_chars", 12)
    pacing.setdefault("reveal_delay_ms", 15)

    titles = config.setdefault("titles", {})
    titles.setdefault("model", "openai/gpt-4o-mini")
    titles.setdefault("base_url", "https://openrouter.ai/api/v1")
    titles.setdefault("max_length", 60)
    titles.setdefault("api_key", "")

    greeting = config.setdefault("greeting", {})
    greeting.setdefault("max_depth", 4)

    return config


def apply_env_overrides(config):
    """Environment variables take precedence over YAML values."""
    overrides = {
        ("api", "base_url"): "ANALYSIS_API_BASE_URL",
        ("api", "token"): "ANALYSIS_API_TOKEN",
        ("app", "conversation_dir"): "CONVERSATION_DIR",
        ("titles", "api_key"): "OPENAI_API_KEY",
        ("titles", "model"): "TITLE_MODEL",
        ("titles", "base_url"): "TITLE_MODEL_BASE_URL",
        ("app", "log_level"): "LOG_LEVEL",
    }
    for (section, key), env_name in overrides.items():
        value = os.getenv(env_name)
        if value:
            config.setdefault(section, {})[key] = value
            logger.debug(f"[CONFIG] {section}.{key} overridden by ${env_name}")
    return config

# --------------------------------------------------------------------
# Main Loading Sequence (only load once!)
# --------------------------------------------------------------------

logger.info("Loading configuration...")
config = load_yaml_config("config.yaml")
config = ensure_config_defaults(config)
config = apply_env_overrides(config)

APP_NAME = config["app"]["name"]
DATA_DIR = config["app"]["data_dir"]
CONVERSATION_DIR = config["app"]["conversation_dir"]
LOG_FILE = config["app"]["log_file"]
LOG_LEVEL = config["app"].get("log_level", "INFO")

Path(CONVERSATION_DIR).mkdir(parents=True, exist_ok=True)

# --------------------------------------------------------------------
# Export all config values
# --------------------------------------------------------------------

API_BASE_URL = str(config.get("api", {}).get("base_url")).rstrip("/")
API_TOKEN = config.get("api", {}).get("token") or None
API_TIMEOUT_S = float(config.get("api", {}).get("timeout_s", 30.0))
STREAM_TIMEOUT_S = float(config.get("api", {}).get("stream_timeout_s", 300.0))
UPLOAD_TIMEOUT_S = float(config.get("api", {}).get("upload_timeout_s", 600.0))
API_MAX_CONNECTIONS = int(config.get("api", {}).get("max_connections", 20))
API_MAX_KEEPALIVE = int(config.get("api", {}).get("max_keepalive_connections", 5))
UPLOAD_CHUNK_BYTES = int(config.get("api", {}).get("upload_chunk_bytes", 256 * 1024))
API_PATHS = dict(config.get("api", {}).get("paths", {}))

MAX_VIDEO_MB = float(config.get("limits", {}).get("max_video_mb", 100))
MAX_HISTORY_BYTES = int(config.get("limits", {}).get("max_history_bytes", 18 * 1024 * 1024))

MAX_CONTEXT_TOKENS = int(config.get("context", {}).get("max_context_tokens", 5000))
SIMPLE_FOLLOWUP_TOKENS = int(config.get("context", {}).get("simple_followup_tokens", 1500))
SIMPLE_FOLLOWUP_MAX_TURNS = int(config.get("context", {}).get("simple_followup_max_turns", 2))
FALLBACK_CONTEXT_TOKENS = int(config.get("context", {}).get("fallback_context_tokens", 2000))

STUDIO_PROMPT_DELAY_S = int(config.get("pacing", {}).get("studio_prompt_delay_ms", 300)) / 1000.0
LIBRARY_MESSAGE_DELAY_S = int(config.get("pacing", {}).get("library_message_delay_ms", 100)) / 1000.0
REVEAL_CHUNK_CHARS = int(config.get("pacing", {}).get("reveal_chunk_chars", 12))
REVEAL_DELAY_S = int(config.get("pacing", {}).get("reveal_delay_ms", 15)) / 1000.0

TITLE_MODEL = config.get("titles", {}).get("model")
TITLE_MODEL_BASE_URL = config.get("titles", {}).get("base_url")
TITLE_MODEL_API_KEY = config.get("titles", {}).get("api_key") or None
TITLE_MAX_LENGTH = int(config.get("titles", {}).get("max_length", 60))

GREETING_MAX_DEPTH = int(config.get("greeting", {}).get("max_depth", 4))

# Fixed user-facing strings
DEFAULT_VIDEO_PROMPT = "Please analyse this video for me."
STOPPED_MARKER = "\n\n[Stopped by user]"
CONVERTING_MESSAGE = "Converting video format for analysis..."
QUICK_ANALYSIS_ERROR = "Sorry, I encountered an error analyzing your video. Please try again."
RACKET_SPORTS = ("tennis", "padel", "pickleball")
