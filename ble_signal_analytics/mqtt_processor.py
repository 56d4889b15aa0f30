from __future__ import annotations

import json
import logging
import math
import time
from typing import Callable, List, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .models import EnrichedResult, RawSample
from .pipeline import AnalyticsPipeline


logger = logging.getLogger(__name__)


def parse_payload(data_str: str, timestamp: Optional[float] = None) -> List[RawSample]:
    """
    解析网关上报的读数：
    "<beacon>,<rssi>,<distance>[,<tx_power>];...;<gatewayId>"
    格式错误的条目直接跳过
    """
    parts = data_str.strip().split(";")
    if len(parts) < 2:
        return []
    ts = timestamp if timestamp is not None else time.monotonic() * 1000.0
    samples: List[RawSample] = []
    for item in parts[:-1]:
        fields = [f.strip() for f in item.split(",")]
        if len(fields) not in (3, 4) or not fields[0]:
            continue
        try:
            rssi = int(fields[1])
            distance = float(fields[2])
            tx_power = int(fields[3]) if len(fields) == 4 and fields[3] else None
        except ValueError:
            continue
        if not math.isfinite(distance) or distance < 0:
            continue
        samples.append(
            RawSample(rssi=rssi, distance=distance, timestamp=ts, tx_power=tx_power, beacon_id=fields[0])
        )
    return samples


class MQTTAnalyticsBridge:
    """订阅网关读数主题，经分析流水线处理后发布到上行主题"""

    def __init__(
        self,
        config_manager: ConfigManager,
        pipeline: Optional[AnalyticsPipeline] = None,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ):
        self.config_manager = config_manager
        self.pipeline = pipeline or AnalyticsPipeline.from_config(config_manager)
        self._client_factory = client_factory or (lambda: mqtt.Client(mqtt.CallbackAPIVersion.VERSION2))
        self.client: Optional[mqtt.Client] = None
        self.current_topic: Optional[str] = None

    # ---------- Core processing ----------
    def handle_payload(self, payload: str) -> List[EnrichedResult]:
        samples = parse_payload(payload)
        if not samples:
            logger.warning("消息解析无有效信标数据: %s", payload)
            return []
        results = [self.pipeline.process(sample) for sample in samples]
        if self.client is not None:
            topic = self.config_manager.get_mqtt_config().get("uplink_topic", "/beacon/analytics/{beaconId}")
            for result in results:
                if result.degraded:
                    continue
                message = json.dumps(result.to_dict(), ensure_ascii=False, allow_nan=False)
                self.client.publish(topic.format(beaconId=result.beacon_id), message)
        return results

    # ---------- MQTT ----------
    def start_mqtt_client(self):
        self.client = self._client_factory()
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        try:
            mqtt_config = self.config_manager.get_mqtt_config()
            self.client.connect(mqtt_config["ip"], mqtt_config["port"], 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_forever()
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)

    def stop_mqtt_client(self):
        if self.client is not None:
            try:
                self.client.disconnect()
                self.client.loop_stop()
                logger.info("MQTT连接已断开")
            except Exception as e:
                logger.error("断开MQTT连接时出错: %s", e)

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if not reason_code.is_failure:
            logger.info("成功连接到MQTT服务器")
            topic = self.config_manager.get_mqtt_config().get("downlink_topic", "/beacon/readings/+")
            client.subscribe(topic)
            self.current_topic = topic
            logger.info("已订阅主题: %s", topic)
        else:
            logger.error("连接失败，返回码: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("消息解码失败 (%s): %s", msg.topic, e)
            return
        self.handle_payload(payload)
