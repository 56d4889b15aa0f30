from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any, Dict


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            return v
    return default


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_ANALYTICS_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "kalman": {
                "process_noise": _env_or_default("BLE_KALMAN_PROCESS_NOISE", 0.1, float),
                "measurement_noise": _env_or_default("BLE_KALMAN_MEASUREMENT_NOISE", 4.0, float),
                "initial_uncertainty": _env_or_default("BLE_KALMAN_INITIAL_UNCERTAINTY", 1.0, float),
            },
            "smoother": {
                "window_size": _env_or_default("BLE_SMOOTHER_WINDOW_SIZE", 10, int),
                "decay_factor": _env_or_default("BLE_SMOOTHER_DECAY", 0.9, float),
                "outlier_threshold": _env_or_default("BLE_SMOOTHER_OUTLIER_THRESHOLD", 2.0, float),
                "half_life_seconds": _env_or_default("BLE_SMOOTHER_HALF_LIFE", 30.0, float),
            },
            "distance": {
                "default_tx_power": _env_or_default("BLE_DISTANCE_TX_POWER", -59, int),
                "path_loss_exponent": _env_or_default("BLE_DISTANCE_PATH_LOSS", 2.2, float),
                "rssi_at_1m": _env_or_default("BLE_DISTANCE_RSSI_AT_1M", -59, int),
                "min_reliable_distance": _env_or_default("BLE_DISTANCE_MIN", 0.1, float),
                "max_reliable_distance": _env_or_default("BLE_DISTANCE_MAX", 50.0, float),
            },
            "quality": {
                "window_seconds": _env_or_default("BLE_QUALITY_WINDOW_SECONDS", 30.0, float),
                "interference_threshold_dbm": _env_or_default("BLE_QUALITY_INTERFERENCE_DBM", 10.0, float),
                "max_expected_deviation": _env_or_default("BLE_QUALITY_MAX_DEVIATION", 2.0, float),
            },
            "pipeline": {
                "history_size": _env_or_default("BLE_PIPELINE_HISTORY_SIZE", 1000, int),
                "result_ttl_seconds": _env_or_default("BLE_PIPELINE_RESULT_TTL", 300.0, float),
                "max_tracked_beacons": _env_or_default("BLE_PIPELINE_MAX_BEACONS", 256, int),
                "subscriber_buffer": _env_or_default("BLE_PIPELINE_SUBSCRIBER_BUFFER", 64, int),
            },
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "uplink_topic": _env_or_default("BLE_MQTT_UPLINK_TOPIC", "/beacon/analytics/{beaconId}"),
                "downlink_topic": _env_or_default("BLE_MQTT_DOWNLINK_TOPIC", "/beacon/readings/+"),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except (OSError, yaml.YAMLError) as e:
            logger.warning("读取配置文件 %s 失败，使用默认配置: %s", self.config_file, e)
            self.config = copy.deepcopy(self.default_config)
            self.save_config()

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("保存配置文件 %s 失败: %s", self.config_file, e)

    # ---------- Accessors ----------
    def _section(self, name: str) -> Dict[str, Any]:
        return self.config.get(name, self.default_config[name])

    def get_kalman_config(self):
        return self._section("kalman")

    def get_smoother_config(self):
        return self._section("smoother")

    def get_distance_config(self):
        return self._section("distance")

    def get_quality_config(self):
        return self._section("quality")

    def get_pipeline_config(self):
        return self._section("pipeline")

    def get_mqtt_config(self):
        return self._section("mqtt")

    def set_kalman_config(self, process_noise: float, measurement_noise: float, initial_uncertainty: float):
        self.config["kalman"]["process_noise"] = process_noise
        self.config["kalman"]["measurement_noise"] = measurement_noise
        self.config["kalman"]["initial_uncertainty"] = initial_uncertainty
        self.save_config()

    def set_distance_config(
        self,
        default_tx_power: int,
        path_loss_exponent: float,
        rssi_at_1m: int | None = None,
    ):
        self.config["distance"]["default_tx_power"] = default_tx_power
        self.config["distance"]["path_loss_exponent"] = path_loss_exponent
        if rssi_at_1m is not None:
            self.config["distance"]["rssi_at_1m"] = rssi_at_1m
        self.save_config()

    def set_mqtt_config(self, ip, port, uplink_topic=None, downlink_topic=None):
        self.config["mqtt"]["ip"] = ip
        self.config["mqtt"]["port"] = port
        if uplink_topic is not None:
            self.config["mqtt"]["uplink_topic"] = uplink_topic
        if downlink_topic is not None:
            self.config["mqtt"]["downlink_topic"] = downlink_topic
        self.save_config()
