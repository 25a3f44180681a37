"""
Root conftest for all tests.

Fixtures live next to the tests that use them:
- tests/unit/conftest.py - in-memory engine, FastAPI client, mocked Supabase client
- tests/integration/conftest.py - engine on a real local Supabase
"""
import sys
from pathlib import Path

# Add backend directory to path so main, config, errors and the packages import
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))
