import os

# Must be set before main/config are imported by the test modules
os.environ.setdefault("APP_ENV", "testing")
