"""
k3se/utils/__init__.py

Transport, merge, installer and kubeconfig helpers used by the engine.
"""
