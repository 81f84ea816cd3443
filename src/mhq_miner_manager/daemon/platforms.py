"""Platform adapters for registering the MiningHQ services with the OS.

This module hides every OS-specific service-manager detail behind one
interface so the installer core never branches on the operating system.
A factory selects the variant once, from an OS identifier.

Architecture:
    - PlatformAdapter: Abstract base class defining the capability set
    - WindowsServiceAdapter: Windows implementation using 'sc'
    - LaunchdAdapter: macOS implementation using per-user LaunchAgents
    - SystemdAdapter: Linux implementation using systemctl --user
    - get_adapter(): Factory function to get the adapter for an OS identifier

Registration and unregistration are idempotent: registering a service that
is already registered and unregistering one that is already gone both
succeed without touching the service manager.

Example:
    >>> adapter = get_adapter('linux', '/home/u')
    >>> adapter.register_service(service, adapter.resolve_install_directory())
    True
    >>> adapter.status('mininghq-miner')
    'RUNNING'
"""

import plistlib
import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from ..config import SERVICE_PREFIX, SUPPORTED_OPERATING_SYSTEMS
from ..core.file_io import atomic_write
from ..errors import ConfigurationError, RegistrationError
from ..models import ServiceDefinition
from .paths import get_install_dir, get_launch_agents_dir, get_systemd_user_dir

LAUNCHD_LABEL_PREFIX = 'io.mininghq.'

# Win32 error codes returned by sc.exe as its exit status
ERROR_SERVICE_ALREADY_RUNNING = 1056
ERROR_SERVICE_DOES_NOT_EXIST = 1060
ERROR_SERVICE_NOT_ACTIVE = 1062
ERROR_SERVICE_MARKED_FOR_DELETE = 1072
ERROR_SERVICE_EXISTS = 1073


def _raise_for(result: subprocess.CompletedProcess) -> None:
    raise subprocess.CalledProcessError(
        result.returncode, result.args, result.stdout, result.stderr
    )


class PlatformAdapter(ABC):
    """Abstract base class for OS service-manager adapters.

    All platform-specific adapters must inherit from this class and
    implement all abstract methods. This ensures a consistent interface
    across platforms.
    """

    operating_system: str = ''

    def __init__(self, home_dir: Path | str):
        self.home_dir = Path(home_dir)

    def resolve_install_directory(self) -> Path:
        """Return the OS-conventional install directory under the home dir."""
        return get_install_dir(self.home_dir, self.operating_system)

    @abstractmethod
    def register_service(self, service: ServiceDefinition, install_dir: Path) -> bool:
        """Register and start a service.

        Args:
            service: Service to register
            install_dir: Directory holding the service's artifacts

        Returns:
            True if the service was registered, False if it already was

        Raises:
            RegistrationError: If the service manager rejects the request
        """

    @abstractmethod
    def unregister_service(self, name: str) -> bool:
        """Stop and unregister a service.

        Returns:
            True if the service was removed, False if it was already absent

        Raises:
            RegistrationError: If the service still exists and cannot be removed
        """

    @abstractmethod
    def is_service_registered(self, name: str) -> bool:
        """Check whether the service manager knows about ``name``."""

    @abstractmethod
    def status(self, name: str) -> str:
        """Get the current status of a service.

        Returns:
            str: 'RUNNING', 'STOPPED', 'NOT_INSTALLED' or 'UNKNOWN'
        """

    @abstractmethod
    def registered_services(self) -> list[str]:
        """List registered services whose names carry the MiningHQ prefix."""

    def _run(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess:
        """Run a service-manager command, capturing its output."""
        logger.debug(f"Running: {' '.join(args)}")
        return subprocess.run(
            args,
            capture_output=True,
            text=True,
            check=check,
        )

    def _error(self, name: str, action: str, exc: BaseException) -> RegistrationError:
        detail = exc
        if isinstance(exc, subprocess.CalledProcessError):
            output = (exc.stderr or exc.stdout or '').strip()
            message = f"exit status {exc.returncode}"
            detail = RuntimeError(f"{message}: {output}" if output else message)
        return RegistrationError(name, self.operating_system, f"failed to {action}", cause=detail)

    @staticmethod
    def _command_line(service: ServiceDefinition, install_dir: Path) -> list[str]:
        return [str(Path(install_dir) / service.executable), *service.args]


class WindowsServiceAdapter(PlatformAdapter):
    """Windows Service implementation using 'sc' commands.

    Security:
        All operations require administrator elevation (UAC prompt).
    """

    operating_system = 'windows'

    def register_service(self, service: ServiceDefinition, install_dir: Path) -> bool:
        if self.is_service_registered(service.name):
            logger.debug(f"Service {service.name} already registered")
            return False

        bin_path = subprocess.list2cmdline(self._command_line(service, install_dir))
        display_name = service.description or service.name
        try:
            result = self._run(
                ['sc', 'create', service.name, 'binPath=', bin_path,
                 'start=', 'auto', 'DisplayName=', display_name],
                check=False,
            )
            if result.returncode not in (0, ERROR_SERVICE_EXISTS):
                _raise_for(result)
            result = self._run(['sc', 'start', service.name], check=False)
            if result.returncode not in (0, ERROR_SERVICE_ALREADY_RUNNING):
                _raise_for(result)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self._error(service.name, 'register Windows service', e) from e

        logger.info(f"Registered Windows service {service.name}")
        return True

    def unregister_service(self, name: str) -> bool:
        if not self.is_service_registered(name):
            logger.debug(f"Service {name} not registered, nothing to remove")
            return False

        try:
            result = self._run(['sc', 'stop', name], check=False)
            if result.returncode not in (0, ERROR_SERVICE_DOES_NOT_EXIST, ERROR_SERVICE_NOT_ACTIVE):
                _raise_for(result)
            result = self._run(['sc', 'delete', name], check=False)
            if result.returncode not in (
                0, ERROR_SERVICE_DOES_NOT_EXIST, ERROR_SERVICE_MARKED_FOR_DELETE
            ):
                _raise_for(result)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self._error(name, 'remove Windows service', e) from e

        logger.info(f"Removed Windows service {name}")
        return True

    def is_service_registered(self, name: str) -> bool:
        try:
            result = self._run(['sc', 'query', name], check=False)
        except OSError:
            return False
        return result.returncode == 0

    def status(self, name: str) -> str:
        try:
            result = self._run(['sc', 'query', name], check=False)
        except OSError:
            return 'UNKNOWN'
        if result.returncode == ERROR_SERVICE_DOES_NOT_EXIST:
            return 'NOT_INSTALLED'
        if result.returncode != 0:
            return 'UNKNOWN'
        for line in result.stdout.splitlines():
            if 'STATE' in line:
                if 'RUNNING' in line:
                    return 'RUNNING'
                elif 'STOPPED' in line:
                    return 'STOPPED'
        return 'UNKNOWN'

    def registered_services(self) -> list[str]:
        try:
            result = self._run(['sc', 'query', 'type=', 'service', 'state=', 'all'])
        except (subprocess.CalledProcessError, OSError):
            return []
        services = []
        for line in result.stdout.splitlines():
            if 'SERVICE_NAME' in line:
                parts = line.split(':', 1)
                if len(parts) == 2 and parts[1].strip().startswith(SERVICE_PREFIX):
                    services.append(parts[1].strip())
        return services


class LaunchdAdapter(PlatformAdapter):
    """macOS launchd implementation using per-user LaunchAgents.

    Writes a plist to ~/Library/LaunchAgents and loads it with launchctl.
    """

    operating_system = 'darwin'

    def _label(self, name: str) -> str:
        return f'{LAUNCHD_LABEL_PREFIX}{name}'

    def _plist_path(self, name: str) -> Path:
        return get_launch_agents_dir(self.home_dir) / f'{self._label(name)}.plist'

    def _is_loaded(self, name: str) -> bool:
        try:
            result = self._run(['launchctl', 'list', self._label(name)], check=False)
        except OSError:
            return False
        return result.returncode == 0

    def generate_plist(self, service: ServiceDefinition, install_dir: Path) -> bytes:
        """Render the LaunchAgent plist for ``service``."""
        log_dir = Path(install_dir) / 'logs'
        return plistlib.dumps({
            'Label': self._label(service.name),
            'ProgramArguments': self._command_line(service, install_dir),
            'WorkingDirectory': str(install_dir),
            'RunAtLoad': True,
            'KeepAlive': True,
            'StandardOutPath': str(log_dir / f'{service.name}.log'),
            'StandardErrorPath': str(log_dir / f'{service.name}-error.log'),
        })

    def register_service(self, service: ServiceDefinition, install_dir: Path) -> bool:
        plist_path = self._plist_path(service.name)
        if plist_path.exists() and self._is_loaded(service.name):
            logger.debug(f"LaunchAgent {self._label(service.name)} already loaded")
            return False

        try:
            plist_path.parent.mkdir(parents=True, exist_ok=True)
            (Path(install_dir) / 'logs').mkdir(parents=True, exist_ok=True)
            atomic_write(plist_path, self.generate_plist(service, install_dir))
            self._run(['launchctl', 'load', '-w', str(plist_path)])
        except (subprocess.CalledProcessError, OSError) as e:
            raise self._error(service.name, 'load LaunchAgent', e) from e

        logger.info(f"Loaded LaunchAgent {self._label(service.name)}")
        return True

    def unregister_service(self, name: str) -> bool:
        plist_path = self._plist_path(name)
        loaded = self._is_loaded(name)
        if not plist_path.exists() and not loaded:
            logger.debug(f"LaunchAgent {self._label(name)} not present, nothing to remove")
            return False

        try:
            if loaded:
                target = str(plist_path) if plist_path.exists() else self._label(name)
                result = self._run(['launchctl', 'unload', '-w', target], check=False)
                if result.returncode != 0 and self._is_loaded(name):
                    raise subprocess.CalledProcessError(
                        result.returncode, result.args, result.stdout, result.stderr
                    )
            plist_path.unlink(missing_ok=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self._error(name, 'unload LaunchAgent', e) from e

        logger.info(f"Removed LaunchAgent {self._label(name)}")
        return True

    def is_service_registered(self, name: str) -> bool:
        return self._plist_path(name).exists() and self._is_loaded(name)

    def status(self, name: str) -> str:
        if not self._plist_path(name).exists():
            return 'NOT_INSTALLED'
        try:
            result = self._run(['launchctl', 'list', self._label(name)], check=False)
        except OSError:
            return 'UNKNOWN'
        if result.returncode != 0:
            return 'STOPPED'
        return 'RUNNING' if '"PID"' in result.stdout else 'STOPPED'

    def registered_services(self) -> list[str]:
        agents_dir = get_launch_agents_dir(self.home_dir)
        prefix = self._label(SERVICE_PREFIX)
        return sorted(
            path.stem[len(LAUNCHD_LABEL_PREFIX):]
            for path in agents_dir.glob(f'{prefix}*.plist')
        )


class SystemdAdapter(PlatformAdapter):
    """Linux systemd implementation using systemctl --user.

    Unit files live in ~/.config/systemd/user/ so no root access is needed.
    """

    operating_system = 'linux'

    def _unit_name(self, name: str) -> str:
        return f'{name}.service'

    def _unit_path(self, name: str) -> Path:
        return get_systemd_user_dir(self.home_dir) / self._unit_name(name)

    def _is_enabled(self, name: str) -> bool:
        try:
            result = self._run(
                ['systemctl', '--user', 'is-enabled', self._unit_name(name)], check=False
            )
        except OSError:
            return False
        return result.returncode == 0

    def generate_unit(self, service: ServiceDefinition, install_dir: Path) -> str:
        """Render the systemd unit file for ``service``."""
        exec_start = shlex.join(self._command_line(service, install_dir))
        description = service.description or f'MiningHQ {service.name}'
        return f"""[Unit]
Description={description}
After=network-online.target

[Service]
Type=simple
WorkingDirectory={install_dir}
ExecStart={exec_start}
Restart=on-failure
RestartSec=5

[Install]
WantedBy=default.target
"""

    def register_service(self, service: ServiceDefinition, install_dir: Path) -> bool:
        unit_path = self._unit_path(service.name)
        if unit_path.exists() and self._is_enabled(service.name):
            logger.debug(f"Unit {self._unit_name(service.name)} already enabled")
            return False

        try:
            unit_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(unit_path, self.generate_unit(service, install_dir).encode('utf-8'))
            self._run(['systemctl', '--user', 'daemon-reload'])
            self._run(['systemctl', '--user', 'enable', '--now', self._unit_name(service.name)])
        except (subprocess.CalledProcessError, OSError) as e:
            raise self._error(service.name, 'enable systemd unit', e) from e

        logger.info(f"Enabled systemd unit {self._unit_name(service.name)}")
        return True

    def unregister_service(self, name: str) -> bool:
        unit_path = self._unit_path(name)
        enabled = self._is_enabled(name)
        if not unit_path.exists() and not enabled:
            logger.debug(f"Unit {self._unit_name(name)} not present, nothing to remove")
            return False

        try:
            result = self._run(
                ['systemctl', '--user', 'disable', '--now', self._unit_name(name)], check=False
            )
            if result.returncode != 0 and self._is_enabled(name):
                _raise_for(result)
            unit_path.unlink(missing_ok=True)
            self._run(['systemctl', '--user', 'daemon-reload'])
        except (subprocess.CalledProcessError, OSError) as e:
            raise self._error(name, 'remove systemd unit', e) from e

        logger.info(f"Removed systemd unit {self._unit_name(name)}")
        return True

    def is_service_registered(self, name: str) -> bool:
        return self._unit_path(name).exists() and self._is_enabled(name)

    def status(self, name: str) -> str:
        if not self._unit_path(name).exists():
            return 'NOT_INSTALLED'
        try:
            result = self._run(
                ['systemctl', '--user', 'is-active', self._unit_name(name)], check=False
            )
        except OSError:
            return 'UNKNOWN'
        state = result.stdout.strip()
        if state == 'active':
            return 'RUNNING'
        elif state in ('inactive', 'failed'):
            return 'STOPPED'
        return 'UNKNOWN'

    def registered_services(self) -> list[str]:
        unit_dir = get_systemd_user_dir(self.home_dir)
        return sorted(path.stem for path in unit_dir.glob(f'{SERVICE_PREFIX}*.service'))


_ADAPTERS: dict[str, type[PlatformAdapter]] = {
    'windows': WindowsServiceAdapter,
    'darwin': LaunchdAdapter,
    'linux': SystemdAdapter,
}


def get_adapter(operating_system: str, home_dir: Path | str) -> PlatformAdapter:
    """Factory function to get the adapter for an OS identifier.

    Args:
        operating_system: One of SUPPORTED_OPERATING_SYSTEMS
        home_dir: Home directory services are installed for

    Returns:
        PlatformAdapter: Platform-specific adapter instance

    Raises:
        ConfigurationError: If the OS identifier is not supported
    """
    try:
        adapter_cls = _ADAPTERS[operating_system]
    except KeyError:
        raise ConfigurationError(
            f"unsupported operating system {operating_system!r} "
            f"(expected one of: {', '.join(SUPPORTED_OPERATING_SYSTEMS)})"
        ) from None
    return adapter_cls(home_dir)


__all__ = [
    'PlatformAdapter',
    'WindowsServiceAdapter',
    'LaunchdAdapter',
    'SystemdAdapter',
    'get_adapter',
]
