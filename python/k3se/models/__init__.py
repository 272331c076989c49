"""
k3se/models/__init__.py

Pydantic models for the cluster document, SSH access, engine settings and kubeconfigs.
"""
