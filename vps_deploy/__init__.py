"""
vps-deploy

Pooled SSH sessions and templated, multi-step deployments across a fleet of
remote hosts.
"""

__version__ = "0.1.0"
