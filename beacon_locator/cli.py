from __future__ import annotations

import argparse
import logging
import signal
import sys
import uuid as uuid_lib

from .anchor_store import AnchorStore
from .calculator import RssiModel, haversine_distance
from .config_manager import ConfigManager
from .models import Anchor, BeaconIdentity, PositionEstimate
from .mqtt import MQTTBeaconScanner, MQTTLocationPublisher, create_client
from .pipeline import LocationManager


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: int | str = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)


def _log_updates(manager: LocationManager) -> None:
    """输出定位结果，直到管线被清理或扫描源失效"""
    last: PositionEstimate | None = None
    for update in manager.location_updates.subscribe():
        if update.error:
            logger.warning("定位错误: %s (信标数: %d)", update.error, len(update.beacons))
            if manager.upstream_failed:
                return
            continue
        pos = update.position
        if pos is None:
            logger.info("无可用位置 (信标数: %d)", len(update.beacons))
            continue
        moved = (
            haversine_distance(last.latitude, last.longitude, pos.latitude, pos.longitude)
            if last
            else 0.0
        )
        logger.info(
            "位置: (%.6f, %.6f), 精度: %.2f 米, 位移: %.2f 米, 信标数: %d",
            pos.latitude,
            pos.longitude,
            pos.accuracy,
            moved,
            len(update.beacons),
        )
        last = pos


def run(args):
    config = ConfigManager(args.config)
    anchor_store = AnchorStore(config)
    anchor_store.load()
    rssi_model = RssiModel.from_config(config.get_rssi_model_config())

    manager = LocationManager(
        lambda: MQTTBeaconScanner(config, anchor_store, rssi_model),
        calculator_type=config.get_calculator_type(),
    )
    if manager.is_closed:
        logger.error("定位管线初始化失败: %s", manager.location_updates.value.error)
        return 1

    mqtt_config = config.get_mqtt_config()
    publish_client = create_client()
    try:
        publish_client.connect(mqtt_config["ip"], int(mqtt_config["port"]), 60)
    except (OSError, ValueError) as e:
        logger.error("连接结果发布服务器失败: %s", e)
        manager.cleanup()
        return 1
    publish_client.loop_start()
    publisher = MQTTLocationPublisher(config, publish_client, manager.location_updates)
    publisher.start()

    # graceful shutdown，清理管线后 _log_updates 随即返回
    def handle_sigint(sig, frame):
        manager.cleanup()

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    manager.start()
    _log_updates(manager)

    failed = manager.upstream_failed
    if failed:
        logger.error("信标扫描源已失效，退出定位")
    manager.cleanup()
    publisher.stop()
    publish_client.disconnect()
    publish_client.loop_stop()
    return 1 if failed else 0


def _parse_identity(args) -> BeaconIdentity:
    return BeaconIdentity(uuid=uuid_lib.UUID(args.uuid), major=args.major, minor=args.minor)


def anchors_list(args):
    store = AnchorStore(ConfigManager(args.config))
    store.load()
    for key, anchor in store.all().items():
        print(f"{key}\t{anchor.latitude:.6f}\t{anchor.longitude:.6f}\t{anchor.altitude:.2f}")
    return 0


def anchors_add(args):
    store = AnchorStore(ConfigManager(args.config))
    store.load()
    try:
        anchor = Anchor(
            identity=_parse_identity(args),
            latitude=args.latitude,
            longitude=args.longitude,
            altitude=args.altitude,
        )
    except ValueError as e:
        logger.error("无效的锚点: %s", e)
        return 2
    store.add(anchor)
    logger.info("已登记锚点 %s", anchor.key)
    return 0


def anchors_remove(args):
    store = AnchorStore(ConfigManager(args.config))
    store.load()
    try:
        identity = _parse_identity(args)
    except ValueError as e:
        logger.error("无效的信标标识: %s", e)
        return 2
    if not store.delete(identity):
        logger.error("锚点不存在: %s", identity.key)
        return 1
    logger.info("已删除锚点 %s", identity.key)
    return 0


def _add_identity_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("uuid", help="信标 UUID")
    parser.add_argument("major", type=int, help="major (0-65535)")
    parser.add_argument("minor", type=int, help="minor (0-65535)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="beacon-locator", description="Beacon Locator CLI")
    parser.add_argument(
        "--config",
        default=None,
        help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BEACON_LOCATOR_CONFIG",
    )
    parser.add_argument("--log-level", default="INFO", help="日志级别")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="通过 MQTT 接收扫描数据并持续定位")
    p_run.set_defaults(func=run)

    p_anchors = sub.add_parser("anchors", help="管理锚点信标")
    anchors_sub = p_anchors.add_subparsers(dest="anchors_cmd", required=True)

    p_list = anchors_sub.add_parser("list", help="列出锚点")
    p_list.set_defaults(func=anchors_list)

    p_add = anchors_sub.add_parser("add", help="新增或覆盖锚点")
    _add_identity_args(p_add)
    p_add.add_argument("latitude", type=float, help="纬度")
    p_add.add_argument("longitude", type=float, help="经度")
    p_add.add_argument("--altitude", type=float, default=0.0, help="高度（米）")
    p_add.set_defaults(func=anchors_add)

    p_remove = anchors_sub.add_parser("remove", help="删除锚点")
    _add_identity_args(p_remove)
    p_remove.set_defaults(func=anchors_remove)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level.upper())
    # 无子命令时默认启动定位
    if not hasattr(args, "func"):
        return run(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
