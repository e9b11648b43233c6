import os
import sys

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

# Tests never need a running Redis unless they ask for one explicitly.
os.environ["ARCHUNT_STORE"] = "memory"
