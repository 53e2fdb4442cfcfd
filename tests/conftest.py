import os

# Must be set before any service module builds its engine or settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("PANEL_URL", "http://panel.test")
os.environ.setdefault("PANEL_KEY", "test-panel-key")
os.environ.setdefault("JWT_SECRET", "test-secret")
