# src/gateway_cli/__init__.py
