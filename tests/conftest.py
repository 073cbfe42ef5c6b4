import os

# Importing database builds the default engine; keep it off the filesystem.
os.environ.setdefault("LEDGERBOOK_DATABASE_URL", "sqlite+pysqlite:///:memory:")
