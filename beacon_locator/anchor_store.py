from __future__ import annotations

import logging
import os
import uuid as uuid_lib
from typing import Dict, Optional, cast

import pandas as pd

from .config_manager import ConfigManager
from .models import Anchor, BeaconIdentity, BeaconObservation


logger = logging.getLogger(__name__)

_ID_COLUMNS = ["uuid", "major", "minor"]
_POS_COLUMNS = ["latitude", "longitude", "altitude"]


class AnchorStore:
    """管理锚点信标的存储与访问（pandas + CSV），索引为 uuid:major:minor"""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._df = pd.DataFrame(columns=_ID_COLUMNS + _POS_COLUMNS)
        self._df.index.name = "key"
        self._config = config_manager or ConfigManager()

    # ---- Utils ----
    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        missing = [col for col in _ID_COLUMNS + ["latitude", "longitude"] if col not in df.columns]
        if missing:
            raise KeyError(f"CSV 文件缺少列: {missing}")
        if "altitude" not in df.columns:
            df["altitude"] = 0.0
        for col in _POS_COLUMNS:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["altitude"] = df["altitude"].fillna(0.0)
        # 坐标非法的行直接丢弃
        bad = ~(df["latitude"].between(-90.0, 90.0) & df["longitude"].between(-180.0, 180.0))
        if bad.any():
            logger.warning("锚点表中 %d 行坐标无效，已忽略", int(bad.sum()))
            df = df[~bad]
        df = df.astype({"major": "int64", "minor": "int64"})
        df["uuid"] = df["uuid"].map(lambda u: str(uuid_lib.UUID(str(u))))
        df = df[_ID_COLUMNS + _POS_COLUMNS].copy()
        df["key"] = df["uuid"] + ":" + df["major"].astype(str) + ":" + df["minor"].astype(str)
        df = df.drop_duplicates(subset=["key"], keep="last").set_index("key")
        df = df.astype({"latitude": "float64", "longitude": "float64", "altitude": "float64"})
        return df.sort_index()

    @staticmethod
    def _row_to_anchor(row: pd.Series) -> Anchor:
        return Anchor(
            identity=BeaconIdentity(
                uuid=uuid_lib.UUID(str(row.at["uuid"])),
                major=int(row.at["major"]),
                minor=int(row.at["minor"]),
            ),
            latitude=float(row.at["latitude"]),
            longitude=float(row.at["longitude"]),
            altitude=float(row.at["altitude"]),
        )

    # ---- Load/Save ----
    def load(self, anchor_file_path: Optional[str] = None):
        csv_path = anchor_file_path or self._config.get_anchor_db_path()
        if not os.path.exists(csv_path):
            logger.info("锚点表 %s 不存在，创建示例", csv_path)
            self._create_sample(csv_path)
            return
        try:
            df = pd.read_csv(csv_path, dtype={"uuid": str})
            self._df = self._normalize_df(df)
        except (OSError, ValueError, KeyError) as e:
            # 出错时也生成示例，保证系统可运行
            logger.error("读取锚点表 %s 失败: %s", csv_path, e)
            self._create_sample(csv_path)
        logger.info("已加载 %d 个锚点", len(self._df))

    def _create_sample(self, anchor_file_path: Optional[str] = None):
        csv_path = anchor_file_path or self._config.get_anchor_db_path()
        df = pd.DataFrame([
            {
                "uuid": "00000000-0000-0000-0000-000000000000",
                "major": 1,
                "minor": 1,
                "latitude": 31.0,
                "longitude": 120.0,
                "altitude": 0.0,
            }
        ])
        self._df = self._normalize_df(df)
        self.save(csv_path)

    def save(self, anchor_file_path: Optional[str] = None):
        csv_path = anchor_file_path or self._config.get_anchor_db_path()
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        # 索引由 uuid/major/minor 推导，不落盘
        self._df.to_csv(csv_path, index=False, encoding="utf-8")

    # ---- CRUD ----
    def add(self, anchor: Anchor):
        # 新增或覆盖
        ident = anchor.identity
        row = pd.DataFrame(
            [
                {
                    "uuid": str(ident.uuid),
                    "major": ident.major,
                    "minor": ident.minor,
                    "latitude": float(anchor.latitude),
                    "longitude": float(anchor.longitude),
                    "altitude": float(anchor.altitude),
                }
            ],
            index=pd.Index([anchor.key], name="key"),
        )
        rest = self._df.drop(index=anchor.key, errors="ignore")
        self._df = pd.concat([rest, row]).sort_index() if len(rest) else row
        self.save()

    def update(self, anchor: Anchor) -> bool:
        if anchor.key in self._df.index:
            self.add(anchor)
            return True
        return False

    def delete(self, identity: BeaconIdentity) -> bool:
        if identity.key in self._df.index:
            self._df = self._df.drop(index=identity.key)
            self.save()
            return True
        return False

    # ---- Accessors ----
    def __len__(self) -> int:
        return len(self._df)

    def has(self, identity: BeaconIdentity) -> bool:
        return identity.key in self._df.index

    def get(self, identity: BeaconIdentity) -> Optional[Anchor]:
        if identity.key not in self._df.index:
            return None
        return self._row_to_anchor(cast(pd.Series, self._df.loc[identity.key]))

    def all(self) -> Dict[str, Anchor]:
        result: Dict[str, Anchor] = {}
        for key, row in self._df.iterrows():
            result[str(key)] = self._row_to_anchor(cast(pd.Series, row))
        return result

    def locate(
        self,
        uuid: uuid_lib.UUID | str,
        major: int,
        minor: int,
        rssi: int,
        distance: Optional[float],
    ) -> Optional[BeaconObservation]:
        """把扫描到的信标与锚点位置合并为观测；未登记的信标返回 None"""
        anchor = self.get(BeaconIdentity(uuid=uuid, major=major, minor=minor))
        if anchor is None:
            return None
        return anchor.observe(rssi=rssi, distance=distance)
