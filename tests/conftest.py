import os

# Keep tests free of exporters and instrumentation side effects
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_TIMESTAMPS", "false")
