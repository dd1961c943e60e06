import os
import tempfile

# Settings are read once per process; keep snapshot files out of the checkout.
os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
