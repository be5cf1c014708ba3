"""Polygon Net-Flow Tracker - exchange inflow/outflow accounting from ledger polling."""

__version__ = "0.1.0"
