# backend/push_relay/gcm/ledger.py

"""
ラウンドをまたいだ受信者ごとの結果の管理と、最終結果の集約。

LedgerState はイミュータブルで、merge_round() がラウンドごとに新しい状態を返す。
ネットワークに依存しないので単体でテストできる。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Sequence, Tuple

from .errors import LedgerConsistencyError
from .schemas import BatchOutcome, DeliveryResult, RecipientResult


@dataclass(frozen=True)
class LedgerState:
    """
    ある時点での集計状態。

    - settled: 登録 ID → 直近の結果（再送待ちの ID も最後の失敗結果を持つ）
    - pending: 次のラウンドで送る登録 ID（順序保持）
    """

    settled: Mapping[str, RecipientResult] = field(
        default_factory=lambda: MappingProxyType({})
    )
    pending: Tuple[str, ...] = ()

    @classmethod
    def initial(cls, registration_ids: Sequence[str]) -> "LedgerState":
        return cls(settled=MappingProxyType({}), pending=tuple(registration_ids))


def merge_round(state: LedgerState, outcome: BatchOutcome) -> LedgerState:
    """
    state.pending に対して返ってきた outcome を反映した新しい状態を返す。

    - 配信成功 / 再送不可のエラー → 確定（pending から外れる）
    - Unavailable / InternalServerError → 次ラウンドも pending に残す
    - 確定済みの ID は上書きしない（重複 ID がすでに確定している場合など）

    :raises LedgerConsistencyError: 結果件数が pending の件数と一致しない場合
    """
    pending = state.pending
    results = outcome.results

    if len(results) != len(pending):
        # GCM は送った ID すべてに 1:1 で応答する前提。崩れたらリトライしない。
        raise LedgerConsistencyError(
            f"Internal error: sizes do not match. results={len(results)}, pending={len(pending)}"
        )

    settled: Dict[str, RecipientResult] = dict(state.settled)
    next_pending = []

    for registration_id, result in zip(pending, results):
        if registration_id in settled and not settled[registration_id].is_retriable:
            continue
        settled[registration_id] = result
        if result.is_retriable:
            next_pending.append(registration_id)

    # 同じラウンド内で後ろの重複 ID が確定させた場合は pending から外す
    next_pending = [rid for rid in next_pending if settled[rid].is_retriable]

    return LedgerState(settled=MappingProxyType(settled), pending=tuple(next_pending))


def aggregate(
    registration_ids: Sequence[str],
    state: LedgerState,
    multicast_ids: Sequence[int],
) -> DeliveryResult:
    """
    最終状態から DeliveryResult を組み立てる。

    結果は呼び出し元の registration_ids と同じ順序で並べる。重複 ID は同じ結果を参照する。

    :raises LedgerConsistencyError: 応答を得たラウンドがない / 結果のない ID がある場合
    """
    if not multicast_ids:
        raise LedgerConsistencyError("Cannot aggregate without any successful round")

    results = []
    for registration_id in registration_ids:
        result = state.settled.get(registration_id)
        if result is None:
            raise LedgerConsistencyError(f"No result recorded for {registration_id!r}")
        results.append(result)

    success = sum(1 for r in results if r.is_delivered)
    canonical_ids = sum(
        1 for r in results if r.is_delivered and r.canonical_registration_id is not None
    )

    return DeliveryResult(
        success=success,
        failure=len(results) - success,
        canonical_ids=canonical_ids,
        multicast_id=multicast_ids[0],
        retry_multicast_ids=list(multicast_ids[1:]),
        results=results,
    )
