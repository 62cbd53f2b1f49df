# backend/push_relay/gcm/backoff.py

"""
リトライ間隔（指数バックオフ＋ジッター）と、キャンセル可能な待機。

- delay は 1000ms から始まり、倍にしても上限未満のときだけ倍にする
- 実際の待機時間は delay/2 + [0, delay) のランダム値
- 待機は threading.Event でいつでも打ち切れる
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

BACKOFF_INITIAL_DELAY_MS = 1000
MAX_BACKOFF_DELAY_MS = 1024000


@dataclass(frozen=True)
class BackoffPolicy:
    """指数バックオフの設定値と計算。状態は持たない。"""

    initial_delay_ms: int = BACKOFF_INITIAL_DELAY_MS
    max_delay_ms: int = MAX_BACKOFF_DELAY_MS

    def __post_init__(self) -> None:
        if self.initial_delay_ms <= 0:
            raise ValueError("initial_delay_ms must be greater than 0")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must not be smaller than initial_delay_ms")

    def next_delay(self, previous_ms: int) -> int:
        """
        前回の delay から次の delay を返す。

        倍にすると上限に達する場合は、現在の値のまま据え置く。
        """
        if 2 * previous_ms < self.max_delay_ms:
            return previous_ms * 2
        return previous_ms

    def delay_for_attempt(self, attempt: int) -> int:
        """attempt 回目（1始まり）の失敗後に使う delay。"""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        delay = self.initial_delay_ms
        for _ in range(attempt - 1):
            delay = self.next_delay(delay)
        return delay

    def delays(self) -> Iterator[int]:
        delay = self.initial_delay_ms
        while True:
            yield delay
            delay = self.next_delay(delay)

    @staticmethod
    def jittered_ms(delay_ms: int, rng: random.Random) -> int:
        """
        実際に待機する時間（ms）。[delay/2, delay*1.5) の範囲に収まる。
        """
        return (delay_ms + 1) // 2 + rng.randrange(delay_ms)


class Sleeper:
    """
    キャンセル可能な待機。

    cancel_event がセットされると待機を即座に打ち切る。
    """

    def sleep(
        self,
        seconds: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """
        :return: 最後まで待てた場合 True、キャンセルされた場合 False
        """
        event = cancel_event or threading.Event()
        return not event.wait(seconds)
