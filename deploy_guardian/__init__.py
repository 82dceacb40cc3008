"""
Deployment health monitor and automated GitOps rollback controller
"""

__version__ = "1.0.0"
