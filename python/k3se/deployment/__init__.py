"""
k3se/deployment/__init__.py

The cluster engine and the operations built on it.
"""
