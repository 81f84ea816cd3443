"""OS-conventional path helpers for mhq-miner-manager.

Every function takes the home directory and OS identifier explicitly, so
callers (and tests) control exactly where things land instead of relying on
``Path.home()`` or ``sys.platform``.

All functions return Path objects. Directories are NOT created automatically;
callers should call ``path.mkdir(parents=True, exist_ok=True)`` as needed.
"""

from pathlib import Path

from ..config import APP_NAME, POINTER_FILE_NAME, STAGING_DIR_NAME

__all__ = [
    'INSTALL_DIR_NAME',
    'get_install_dir',
    'get_logs_dir',
    'get_staging_dir',
    'get_systemd_user_dir',
    'get_launch_agents_dir',
    'get_pointer_file_path',
]

# Directory name used for the installed services
INSTALL_DIR_NAME = 'MiningHQ'


def get_install_dir(home_dir: Path | str, operating_system: str) -> Path:
    """Get OS-conventional application-data directory for the services.

    Returns:
        Path to installation directory (not created automatically)
        - Windows: ~\\AppData\\Local\\MiningHQ
        - macOS: ~/Library/Application Support/MiningHQ
        - Linux: ~/.local/share/mininghq
    """
    home = Path(home_dir)

    if operating_system == 'windows':
        return home / 'AppData' / 'Local' / INSTALL_DIR_NAME

    elif operating_system == 'darwin':
        return home / 'Library' / 'Application Support' / INSTALL_DIR_NAME

    else:  # linux
        return home / '.local' / 'share' / INSTALL_DIR_NAME.lower()


def get_logs_dir(home_dir: Path | str, operating_system: str) -> Path:
    """Get OS-conventional logs directory for the manager itself.

    Returns:
        Path to logs directory (not created automatically)
        - Windows: ~\\AppData\\Local\\mhq-miner-manager\\logs
        - macOS: ~/Library/Logs/mhq-miner-manager
        - Linux: ~/.local/state/mhq-miner-manager/logs

    Kept outside the install directory so uninstall never deletes an open log.
    """
    home = Path(home_dir)

    if operating_system == 'windows':
        return home / 'AppData' / 'Local' / APP_NAME / 'logs'

    elif operating_system == 'darwin':
        return home / 'Library' / 'Logs' / APP_NAME

    else:  # linux
        return home / '.local' / 'state' / APP_NAME / 'logs'


def get_staging_dir(install_dir: Path | str) -> Path:
    """Directory holding partial downloads inside the install directory."""
    return Path(install_dir) / STAGING_DIR_NAME


def get_systemd_user_dir(home_dir: Path | str) -> Path:
    """Directory for systemd --user unit files."""
    return Path(home_dir) / '.config' / 'systemd' / 'user'


def get_launch_agents_dir(home_dir: Path | str) -> Path:
    """Directory for per-user launchd agents."""
    return Path(home_dir) / 'Library' / 'LaunchAgents'


def get_pointer_file_path(home_dir: Path | str) -> Path:
    """Path to the pointer file naming the install directory."""
    return Path(home_dir) / POINTER_FILE_NAME
