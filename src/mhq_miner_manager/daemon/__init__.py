"""OS integration for mhq-miner-manager.

This package provides:
- Path management (install, logs, service-manager directories)
- Logging setup
- Platform adapters (Windows services, launchd, systemd --user)
"""

from .logging_setup import setup_logging
from .paths import (
    get_install_dir,
    get_launch_agents_dir,
    get_logs_dir,
    get_pointer_file_path,
    get_staging_dir,
    get_systemd_user_dir,
)
from .platforms import (
    LaunchdAdapter,
    PlatformAdapter,
    SystemdAdapter,
    WindowsServiceAdapter,
    get_adapter,
)

__all__ = [
    # Logging
    'setup_logging',
    # Paths
    'get_install_dir',
    'get_launch_agents_dir',
    'get_logs_dir',
    'get_pointer_file_path',
    'get_staging_dir',
    'get_systemd_user_dir',
    # Platforms
    'LaunchdAdapter',
    'PlatformAdapter',
    'SystemdAdapter',
    'WindowsServiceAdapter',
    'get_adapter',
]
