"""Admiral: Kubernetes operator for admission policies and policy servers."""

__version__ = "0.1.0"
