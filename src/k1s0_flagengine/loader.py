"""設定ファイル読み込み"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import FlagEngineConfig
from .exceptions import ConfigError, ConfigErrorCodes

# 環境変数名 -> (セクション, キー)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "FEATUREFLAGS_API_URL": ("api", "url"),
    "FEATUREFLAGS_API_KEY": ("api", "key"),
    "FEATUREFLAGS_CACHE_ENABLED": ("cache", "enabled"),
    "FEATUREFLAGS_CACHE_TTL": ("cache", "ttl"),
    "FEATUREFLAGS_FALLBACK": ("fallback", "behavior"),
    "FEATUREFLAGS_AUTO_CONTEXT": ("context", "auto_resolve"),
    "FEATUREFLAGS_TELEMETRY_ENABLED": ("telemetry", "enabled"),
    "FEATUREFLAGS_TELEMETRY_SAMPLE_RATE": ("telemetry", "sample_rate"),
    "FEATUREFLAGS_LOCAL_MODE": ("local", "enabled"),
    "FEATUREFLAGS_EVENTS_ENABLED": ("events", "enabled"),
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """base と override をディープマージして新しい辞書を返す。リストは置換する。"""
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def apply_env_overrides(
    data: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """ENV_OVERRIDES に挙げた環境変数で設定値を上書きした新しい辞書を返す。

    値は文字列のまま渡し、型変換は FlagEngineConfig の検証に任せる。空文字列は無視する。
    """
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = env.get(name)
        if value:
            overrides.setdefault(section, {})[key] = value
    return deep_merge(data, overrides)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(
            code=ConfigErrorCodes.READ_FILE,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            code=ConfigErrorCodes.PARSE_YAML,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise ConfigError(
            code=ConfigErrorCodes.PARSE_YAML,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def load(
    base_path: Path,
    env_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FlagEngineConfig:
    """設定ファイルを読み込んで FlagEngineConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    environ: 環境変数（省略時は os.environ）。ENV_OVERRIDES の変数はファイルより優先される。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    data = apply_env_overrides(data, environ)
    try:
        return FlagEngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            code=ConfigErrorCodes.VALIDATION,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
