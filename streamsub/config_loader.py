"""Handles loading configuration from YAML files."""

import copy
import yaml
import os
import logging
from typing import Any, Dict, Optional
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_POLISH_PROMPT = (
    "Proofread the following speech transcript. Add punctuation, fix obvious "
    "recognition errors and put each sentence on its own line. Keep the original "
    "language and wording. Output only the corrected text without explanations:\n"
    "{{TRANSCRIPT}}"
)

DEFAULT_SUMMARY_PROMPT = (
    "Summarise the following transcript. Reply with a single JSON object with the "
    "keys \"keyPoints\", \"characters\", \"events\" (arrays of strings) and "
    "\"summary\" (a string). Output JSON only.\n\n{{TRANSCRIPT}}"
)

DEFAULT_RELATION_PROMPT = (
    "List the people in the following transcript and how they are related. Reply "
    "with a single JSON object: {\"characters\": [{\"name\": \"\", \"title\": \"\"}], "
    "\"relations\": [{\"from\": \"\", \"to\": \"\", \"relation\": \"\", \"type\": \"\"}]}. "
    "Output JSON only.\n\n{{TRANSCRIPT}}"
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "subtitle_dir": os.path.join("~", ".streamsub", "subtitles"),
    "model_dir": os.path.join("~", ".streamsub", "models"),
    "temp_dir": None,
    "log_dir": "logs",
    "log_file": "streamsub.log",
    "ffmpeg_path": None,
    "ffprobe_path": None,
    "whisper_model": "large-v3",
    "device": "cuda",
    "whisper_fp16": True,
    "language": "zh",
    "completion": {
        "url": "http://127.0.0.1:1234/v1/chat/completions",
        "model": "qwen/qwen3-8b",
        "timeout_seconds": 180,
        # Second polishing backend (Ollama generate API), tried when the chat endpoint fails
        "fallback": {
            "enabled": True,
            "url": "http://localhost:11434/api/generate",
            "model": "qwen2:7b",
            "timeout_seconds": 120,
            "max_tokens": 2000,
            "context_tokens": 4096,
        },
    },
    "polish": {
        "prompt": DEFAULT_POLISH_PROMPT,
        "max_chars": 1500,
        "temperature": 0.1,
        "max_tokens": 8000,
    },
    "streaming": {
        "chunk_sizes": [25, 30, 35, 40],
        "overlap_seconds": 5,
        "resume_rewind_seconds": 10,
        "completeness_tolerance_seconds": 5,
        "boundary_tolerance_seconds": 1.0,
        "stale_tail_margin_seconds": 0.5,
        "similarity_threshold": 0.7,
    },
    "batch": {
        "initialize_seconds": 60,
        "poll_interval_seconds": 0.5,
        "speed_factor": 4,
        "default_duration_seconds": 600,
    },
    "insights": {
        "summary_prompt": DEFAULT_SUMMARY_PROMPT,
        "relation_prompt": DEFAULT_RELATION_PROMPT,
        "summary_max_chars": 10000,
        "relation_max_chars": 8000,
        "temperature": 0.3,
        "max_tokens": 2000,
        "timeout_seconds": 300,
    },
}

def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged

class ConfigLoader:
    """Loads configuration settings from a YAML file."""

    def load_config(self, config_path: str) -> dict:
        """
        Loads configuration from the specified YAML file path.

        Args:
            config_path: The path to the YAML configuration file.

        Returns:
            A dictionary containing the loaded configuration settings.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            ConfigurationError: If the file cannot be parsed as YAML or
                              if there are other reading errors.
        """
        logger.info(f"Attempting to load configuration from: {config_path}")
        if not os.path.exists(config_path):
            logger.error(f"Configuration file not found at path: {config_path}")
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        if not os.path.isfile(config_path):
            logger.error(f"Configuration path is not a file: {config_path}")
            raise ConfigurationError(f"Configuration path is not a file: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Invalid YAML format in {config_path}: {e}") from e
        except IOError as e:
            logger.error(f"Error reading configuration file {config_path}: {e}", exc_info=True)
            raise ConfigurationError(f"Could not read configuration file {config_path}: {e}") from e

        if not isinstance(config, dict):
            # Handle cases where YAML loads something other than a dictionary (e.g., just a string)
            logger.error(f"Configuration file {config_path} did not load as a dictionary (root object).")
            raise ConfigurationError(f"Invalid YAML structure in {config_path}. Root must be a mapping (dictionary).")
        logger.info(f"Configuration loaded successfully from {config_path}")
        return config

    def with_defaults(self, config: Optional[dict] = None) -> dict:
        """
        Returns the configuration merged over DEFAULT_CONFIG.

        Nested sections are merged key by key, so a file that only sets
        ``streaming.overlap_seconds`` keeps every other streaming default.
        Path entries starting with ``~`` are expanded.

        Raises:
            ConfigurationError: If a section that must be a mapping is not one,
                                or the polish prompt lacks the placeholder.
        """
        config = config or {}
        for section in ("completion", "polish", "streaming", "batch", "insights"):
            if section in config and not isinstance(config[section], dict):
                raise ConfigurationError(f"Configuration section '{section}' must be a mapping.")
        merged = _deep_merge(DEFAULT_CONFIG, config)
        if not isinstance(merged["completion"]["fallback"], dict):
            raise ConfigurationError("Configuration section 'completion.fallback' must be a mapping.")

        for key in ("subtitle_dir", "model_dir", "temp_dir"):
            if merged.get(key):
                merged[key] = os.path.expanduser(merged[key])

        if "{{TRANSCRIPT}}" not in merged["polish"]["prompt"]:
            raise ConfigurationError("polish.prompt must contain the {{TRANSCRIPT}} placeholder.")
        chunk_sizes = merged["streaming"]["chunk_sizes"]
        if not chunk_sizes or any(float(size) <= float(merged["streaming"]["overlap_seconds"]) for size in chunk_sizes):
            raise ConfigurationError("streaming.chunk_sizes must be non-empty and each larger than overlap_seconds.")
        return merged
