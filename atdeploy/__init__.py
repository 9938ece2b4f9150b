"""
atdeploy - single-host provisioning for a native AT Protocol service stack.

This package provides a CLI that installs dependencies, renders per-service
configuration, registers a process supervisor, configures an nginx reverse
proxy with TLS, opens the firewall and schedules backups.
"""

__version__ = "0.1.0"
__author__ = "atdeploy maintainers"
