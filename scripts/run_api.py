"""Run the operator API.

Usage:
  python scripts/run_api.py
"""

from extraction_queue.main import run_server

if __name__ == "__main__":
    run_server()
