"""
Firelink 配置管理

支持 YAML 配置文件和环境变量覆盖。
"""

import os
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Any, Dict, Optional
from pathlib import Path
import yaml


@dataclass
class FirebaseConfig:
    """Firebase 连接配置"""
    database_url: str = ""
    project_id: str = ""
    # service account JSON 路径 (作为 connect() 的认证凭证)
    credentials: str = ""
    storage_bucket: str = ""
    # Realtime Database 规则中的 auth 变量覆盖
    auth_override: Optional[Dict[str, Any]] = None

    def to_options(self) -> Dict[str, Any]:
        """转换为 SDK initialize 选项"""
        options: Dict[str, Any] = {}
        if self.database_url:
            options["databaseURL"] = self.database_url
        if self.project_id:
            options["projectId"] = self.project_id
        if self.storage_bucket:
            options["storageBucket"] = self.storage_bucket
        if self.auth_override is not None:
            options["databaseAuthVariableOverride"] = self.auth_override
        return options


@dataclass
class MetricsConfig:
    """Prometheus metrics 配置"""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class Config:
    """Firelink 主配置"""
    firebase: FirebaseConfig = field(default_factory=FirebaseConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    # 日志配置
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """从 YAML 文件加载配置"""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls._from_dict(data if isinstance(data, dict) else {})

    @classmethod
    def from_env(cls) -> "Config":
        """从环境变量加载配置"""
        config = cls()

        if database_url := os.getenv("FIREBASE_DATABASE_URL"):
            config.firebase.database_url = database_url

        if project_id := os.getenv("FIREBASE_PROJECT_ID"):
            config.firebase.project_id = project_id

        credentials = os.getenv("FIREBASE_CREDENTIALS") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if credentials:
            config.firebase.credentials = credentials

        if log_level := os.getenv("FIRELINK_LOG_LEVEL"):
            config.log_level = log_level

        return config

    @classmethod
    def _from_dict(cls, data: Dict) -> "Config":
        """从字典创建配置"""
        config = cls()

        def _filter_kwargs(dc_cls, raw: dict) -> dict:
            allowed = {f.name for f in dataclass_fields(dc_cls) if f.init}
            return {k: v for k, v in raw.items() if k in allowed}

        if isinstance(fb_data := data.get("firebase"), dict):
            config.firebase = FirebaseConfig(**_filter_kwargs(FirebaseConfig, fb_data))

        if isinstance(metrics_data := data.get("metrics"), dict):
            config.metrics = MetricsConfig(**_filter_kwargs(MetricsConfig, metrics_data))

        # 日志配置
        config.log_level = data.get("log_level", "INFO")
        if log_format := data.get("log_format"):
            config.log_format = log_format

        return config


def load_config(config_path: Optional[str] = None) -> Config:
    """
    加载配置

    优先级: 环境变量 > 配置文件 > 默认值
    """
    config = Config()
    resolved_path = resolve_config_path(config_path)
    if resolved_path is not None:
        config = Config.from_yaml(str(resolved_path))

    # 环境变量覆盖
    env_config = Config.from_env()

    for name in ("database_url", "project_id", "credentials"):
        if value := getattr(env_config.firebase, name):
            setattr(config.firebase, name, value)

    if os.getenv("FIRELINK_LOG_LEVEL"):
        config.log_level = env_config.log_level

    return config


def resolve_config_path(config_path: Optional[str] = None) -> Optional[Path]:
    """
    查找配置文件

    顺序: 环境变量 FIRELINK_CONFIG > config_path 参数 > ./config/default.yaml
    """
    candidates = [p for p in (os.getenv("FIRELINK_CONFIG"), config_path) if p]
    candidates.append("config/default.yaml")

    for candidate in map(Path, candidates):
        if candidate.is_file():
            return candidate
    return None
