"""Circulation Desk - loan lifecycle core for a library

This package contains:
- Lending ledger: issue, return, renew, mark lost, overdue sweep (ledger.py)
- Availability counter for each title's loanable copies (availability.py)
- Fine calculation (fines.py)
- SQLite persistence (database.py, repository.py)
- HTTP API (api.py) and CLI (cli.py)
"""

__version__ = "1.0.0"
