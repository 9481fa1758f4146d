"""Stackwright — declarative resource orchestration.

Declares resources in a manifest, orders them by dependency and reconciles
them against cloud, Kubernetes and Helm providers, keeping durable state so
repeated runs converge.
"""

__version__ = "0.1.0"
__author__ = "Stackwright Contributors"
__license__ = "MIT"
