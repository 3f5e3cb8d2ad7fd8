from vync.api.routes import router

__all__ = ["router"]
