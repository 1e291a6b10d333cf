"""タグリレーション操作の例外.

カスタム例外クラスを定義します。
"""


class TagRelationError(Exception):
    """タグリレーション処理の基底例外."""


class InvalidInputError(TagRelationError, ValueError):
    """更新系操作に不正な引数が渡された場合の例外.

    ストアへアクセスする前に送出されるため、この例外が出た時点で
    リレーションは一切変更されていません。
    """


class StoreFailureError(TagRelationError):
    """リレーションストア／ルックアップテーブルの操作に失敗した場合の例外.

    接続断・制約違反・不正な追加条件（tag_where）によるクエリエラーなどを包みます。
    内部でのリトライは行いません。

    Attributes:
        operation: 失敗した操作名（例: "load_tuples"）
    """

    def __init__(self, operation: str, cause: Exception) -> None:
        """例外初期化.

        Args:
            operation: 失敗した操作名
            cause: 元の例外
        """
        self.operation = operation
        super().__init__(f"{operation} failed: {cause}")
