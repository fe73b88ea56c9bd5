"""パーセンテージ判定用のバケット計算"""

from __future__ import annotations

import zlib

MAX_BUCKET = 10000


def bucket(seed: str) -> int:
    """seed を [0, 10000) のバケットに割り当てる。

    CRC32 はプロセス・言語をまたいで同じ値になるため、同じ seed は常に同じバケットになる。
    """
    return abs(zlib.crc32(seed.encode("utf-8"))) % MAX_BUCKET


def in_percentage(seed: str, percentage: int) -> bool:
    """seed のバケットが percentage (0-100) の範囲に入るか判定する。"""
    return bucket(seed) < percentage * 100
