from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import pandas as pd

from .config_manager import ConfigManager
from .models import RawSample
from .mqtt_processor import MQTTAnalyticsBridge
from .pipeline import AnalyticsPipeline


REPLAY_COLUMNS = ["beacon_id", "rssi", "distance", "timestamp"]


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def run_mqtt(args):
    config = ConfigManager(args.config)
    bridge = MQTTAnalyticsBridge(config)

    t = threading.Thread(target=bridge.start_mqtt_client, daemon=True)
    t.start()

    # graceful shutdown
    def handle_sigint(sig, frame):
        bridge.stop_mqtt_client()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()


def load_samples(csv_path: str) -> list[RawSample]:
    """读取回放 CSV：beacon_id,rssi,distance,timestamp[,tx_power]"""
    df = pd.read_csv(csv_path, dtype={"beacon_id": str})
    missing = [c for c in REPLAY_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"CSV 文件缺少列: {', '.join(missing)}")
    df = df.sort_values("timestamp", kind="stable")
    has_tx = "tx_power" in df.columns
    samples = []
    for row in df.itertuples(index=False):
        tx_power = getattr(row, "tx_power") if has_tx else None
        samples.append(
            RawSample(
                rssi=int(row.rssi),
                distance=float(row.distance),
                timestamp=float(row.timestamp),
                tx_power=None if tx_power is None or pd.isna(tx_power) else int(tx_power),
                beacon_id=str(row.beacon_id),
            )
        )
    return samples


def replay(args):
    config = ConfigManager(args.config)
    pipeline = AnalyticsPipeline.from_config(config)
    results = [pipeline.process(s) for s in load_samples(args.csv)]
    summary = pd.DataFrame(
        [
            {
                "beacon_id": r.beacon_id,
                "timestamp": r.sample.timestamp,
                "rssi": r.sample.rssi,
                "filtered_rssi": round(r.filtered.value, 2),
                "outlier": r.filtered.is_outlier,
                "distance": round(r.distance.distance, 2),
                "smoothed": round(r.smoothed.value, 2),
                "quality": round(r.quality.overall_reliability, 3),
                "reliability": r.reliability.overall,
            }
            for r in results
        ]
    )
    print(summary.to_string(index=False))
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ble-signal-analytics", description="BLE Signal Analytics CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BLE_ANALYTICS_CONFIG")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行 MQTT 分析服务")
    p_run.set_defaults(func=run_mqtt)

    p_replay = sub.add_parser("replay", help="回放 CSV 读数并输出分析结果")
    p_replay.add_argument("csv", help="读数 CSV 文件路径")
    p_replay.set_defaults(func=replay)

    args = parser.parse_args(argv)
    # 无子命令/无参数时默认启动服务器
    if not hasattr(args, "func"):
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    main()
