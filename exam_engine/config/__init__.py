from exam_engine.config.settings import settings, Settings

__all__ = ["settings", "Settings"]
