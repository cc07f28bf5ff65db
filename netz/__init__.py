"""
Netz - ephemeral AWS cloud runner.

This package provisions a short-lived ECS container instance, runs a single
task on it, streams the container logs from CloudWatch and tears every
created resource down again.
"""

__version__ = "0.1.0"
__author__ = "Netz"
