"""
Order Worker — 失敗の分類

パイプライン境界ですべて捕捉され、1 つの失敗結果 (reason 付き) に変換される。
retryable は「同じイベントを再実行すれば成功し得るか」を表す。
"""


class OrderProcessingError(Exception):
    """注文処理の失敗（想定内のもの）の基底クラス"""

    reason = "order processing failed"
    retryable = False


class LockUnavailable(OrderProcessingError):
    """リトライしても顧客ロックを取得できなかった"""

    reason = "lock not acquired"
    retryable = True


class UpstreamFailure(OrderProcessingError):
    """外部サービスが想定外の応答を返した（リトライしない）"""

    reason = "upstream request failed"


class UpstreamNotFound(UpstreamFailure):
    """顧客・商品 ID が存在しない（終端条件、リトライしない）"""

    reason = "upstream record not found"


class UpstreamTransientFailure(UpstreamFailure):
    """ネットワーク障害・5xx がリトライ上限まで続いた"""

    reason = "upstream unavailable"
    retryable = True


class CustomerInactive(OrderProcessingError):
    reason = "customer inactive"


class IncompleteOrder(OrderProcessingError):
    """
    要求された商品のうち解決できなかったものがある。

    missing: 商品 ID → 取得失敗の原因。一時障害が 1 つでも含まれていれば
    再実行で揃う可能性があるので retryable になる。
    """

    reason = "incomplete product set"

    def __init__(self, message: str, missing: dict[str, UpstreamFailure]):
        super().__init__(message)
        self.missing = missing
        self.retryable = any(err.retryable for err in missing.values())


class PersistenceFailure(OrderProcessingError):
    reason = "order could not be persisted"
    retryable = True


class MalformedMessage(OrderProcessingError):
    """受信ペイロードをデコードできない（このメッセージは終端）"""

    reason = "malformed message"
