"""
Exchange boundary — adapters and the structured error taxonomy.

  errors.py          — ErrorKind / ExchangeError
  ccxt_adapter.py    — live adapter on ccxt.async_support
  paper_adapter.py   — in-memory mock exchange (dry runs, tests)
"""
from exchange.errors import ErrorKind, ExchangeError, RequestLayerClosed

__all__ = ["ErrorKind", "ExchangeError", "RequestLayerClosed"]
