"""
应用配置模块 (Application Configuration Module)

使用 Pydantic Settings 管理引擎的全部运行参数，支持从 .env 文件和 PVEHUB_ 前缀的环境变量读取；
静态端点清单从 YAML 文件加载，密码可由 PVEHUB_PASSWORD_<ID> 环境变量覆盖。

Uses Pydantic Settings to manage all runtime parameters of the engine, read from the .env
file and PVEHUB_-prefixed environment variables. Static endpoint definitions are loaded
from a YAML file; passwords can be overridden by PVEHUB_PASSWORD_<ID> variables.
"""
import logging
import os
import re
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings

from pvehub.models.alert import AlertKind, Thresholds
from pvehub.models.endpoint import EndpointConfig

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    引擎全局配置类 (Engine Global Configuration Class)

    字段名加 PVEHUB_ 前缀映射同名环境变量（不区分大小写），如 PVEHUB_POLL_INTERVAL=15。
    Field names map to PVEHUB_-prefixed environment variables (case insensitive).
    """

    # HTTP 服务配置 (API Server Configuration)
    api_host: str = "0.0.0.0"  # 监听地址 (Bind Host)
    api_port: int = 8010  # 监听端口 (Bind Port)
    endpoints_file: Optional[str] = None  # 静态端点 YAML 文件 (Static Endpoints YAML)

    # 请求执行配置 (Request Executor Configuration)
    request_timeout: float = 10.0  # 单次请求超时（秒） (Per-call Timeout Seconds)
    max_retries: int = 3  # 瞬时故障最大重试次数 (Max Retries on Transient Failure)
    retry_base_delay: float = 1.0  # 线性退避基数（秒） (Linear Backoff Base Seconds)

    # 轮询配置 (Poller Configuration)
    poll_interval: float = 30.0  # 轮询间隔（秒） (Poll Interval Seconds)
    poll_max_backoff: float = 300.0  # 失败后最大退避（秒） (Max Backoff After Failures)
    quantization_step: float = 1.0  # 百分比字段量化步长 (Percent Quantization Step)

    # 批量调度与广播配置 (Dispatcher & Broadcaster Configuration)
    batch_concurrency: int = 5  # 全局并发上限 (Global Concurrency Limit)
    batch_timeout: float = 120.0  # 单批次截止时间（秒） (Batch Deadline Seconds)
    subscriber_queue_size: int = 1000  # 订阅者队列上限 (Subscriber Queue Limit)

    # 告警配置 (Alert Configuration)
    alert_retention_days: int = 30  # 已恢复告警保留天数 (Resolved Alert Retention Days)
    alert_cleanup_interval: float = 86400.0  # 清理周期（秒） (Cleanup Interval Seconds)
    cpu_critical: Optional[float] = None
    cpu_warning: Optional[float] = 90.0
    cpu_info: Optional[float] = None
    memory_critical: Optional[float] = 95.0
    memory_warning: Optional[float] = 85.0
    memory_info: Optional[float] = None
    disk_critical: Optional[float] = 90.0
    disk_warning: Optional[float] = 80.0
    disk_info: Optional[float] = None
    # 网络吞吐阈值单位为 bytes/s，默认不启用
    network_critical: Optional[float] = None
    network_warning: Optional[float] = None
    network_info: Optional[float] = None

    model_config = {
        "env_prefix": "PVEHUB_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def alert_thresholds(self) -> dict[AlertKind, Thresholds]:
        """按维度组装告警阈值 (Build per-dimension thresholds)"""
        result = {}
        for kind in (AlertKind.CPU, AlertKind.MEMORY, AlertKind.DISK, AlertKind.NETWORK):
            prefix = kind.value
            result[kind] = Thresholds(
                critical=getattr(self, f"{prefix}_critical"),
                warning=getattr(self, f"{prefix}_warning"),
                info=getattr(self, f"{prefix}_info"),
            )
        return result


def _password_env_name(endpoint_id: str) -> str:
    return "PVEHUB_PASSWORD_" + re.sub(r"[^A-Za-z0-9]", "_", endpoint_id).upper()


def load_endpoints(path: str) -> List[EndpointConfig]:
    """从 YAML 文件加载端点清单。

    文件格式::

        endpoints:
          - id: lab
            host: 10.0.0.5
            username: root
            password: secret

    Args:
        path: 配置文件路径。

    Returns:
        解析后的 EndpointConfig 列表。

    Raises:
        FileNotFoundError: 配置文件不存在时抛出。
        ValueError: 文件结构错误、字段校验失败或 id 重复时抛出。
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Endpoints file not found: {path}")

    with open(p) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    entries = data.get("endpoints") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'endpoints' must be a list")

    endpoints: List[EndpointConfig] = []
    seen = set()
    for index, raw in enumerate(entries):
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: endpoint #{index} must be a mapping")
        raw = dict(raw)
        endpoint_id = str(raw.get("id", ""))
        # 密码优先从环境变量读取，避免明文写入配置文件
        env_password = os.environ.get(_password_env_name(endpoint_id)) if endpoint_id else None
        if env_password is not None:
            raw["password"] = env_password
        try:
            cfg = EndpointConfig(**raw)
        except PydanticValidationError as e:
            raise ValueError(f"{path}: endpoint #{index} is invalid: {e}") from e
        if cfg.id in seen:
            raise ValueError(f"{path}: duplicate endpoint id '{cfg.id}'")
        seen.add(cfg.id)
        endpoints.append(cfg)

    logger.info("Loaded %d endpoint(s) from %s", len(endpoints), path)
    return endpoints


# 全局配置实例 (Global Configuration Instance)
settings = Settings()
