"""
Execution layer — request serialization, risk control, order execution, and
position monitoring.

SRP split:
  request_layer.py      — FIFO queue + retry/backoff for every exchange call
  risk_engine.py        — pre-trade risk validation and position sizing
  execution_engine.py   — entries, protective orders, closes (sole Position writer)
  position_monitor.py   — periodic SL / TP / trailing / reversal evaluation
"""
