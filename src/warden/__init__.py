"""
Warden - node-local workload supervisor.
"""
__version__ = "0.1.0"
