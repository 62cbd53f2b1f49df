# backend/push_relay/main.py

"""
バックエンドアプリケーションのエントリーポイント。

- /gcm/send, /gcm/registrations/validate エンドポイントを公開する
"""

from fastapi import FastAPI

from push_relay.gcm.router import router as gcm_router


def create_app() -> FastAPI:
    """
    FastAPI アプリケーションファクトリ。

    - GCM 送信エンドポイント (/gcm/*)
    - ヘルスチェックエンドポイント (/health)
    """
    app = FastAPI(title="GCM Push Relay")

    # ルーター登録
    app.include_router(gcm_router)

    @app.get("/health", tags=["health"])
    def health_check() -> dict:
        """
        簡易ヘルスチェックエンドポイント。
        モニタリングや動作確認用。
        """
        return {"status": "ok"}

    return app


# uvicorn 実行時のエントリーポイント
app = create_app()
