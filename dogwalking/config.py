import os


class Config:
    # ":memory:" keeps everything in process; point it at a file to persist.
    DATABASE_PATH = os.getenv("DOGWALKING_DATABASE", ":memory:")
    # Seconds between background reconciliation runs, 0 turns the scheduler off.
    RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "300"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    UPCOMING_WALKS_LIMIT = int(os.getenv("UPCOMING_WALKS_LIMIT", "5"))
    TESTING = False


class TestingConfig(Config):
    DATABASE_PATH = ":memory:"
    RECONCILE_INTERVAL_SECONDS = 0
    TESTING = True
