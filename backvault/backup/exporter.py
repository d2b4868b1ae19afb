"""
Container export handlers.

Supports:
- DockerExporter: Export tenant containers through the docker CLI

An exporter lists the tenant containers on this node and writes
{backup_dir}/{name}.tar.gz for a container. It never stops the container.
"""

import os
import gzip
import shutil
import logging
import subprocess
import tempfile
from typing import List


logger = logging.getLogger(__name__)


class ExportError(Exception):
    """Raised when container enumeration or export fails."""
    pass


class ContainerExporter:
    """Interface for the container runtime collaborator."""

    def list_tenant_containers(self) -> List[str]:
        raise NotImplementedError

    def export(self, name: str, backup_dir: str) -> str:
        raise NotImplementedError


class DockerExporter(ContainerExporter):
    """
    Exports running containers with `docker export`, gzip-compressed locally.
    """

    def __init__(self, tenant_prefix: str = 'tenant_', docker_binary: str = 'docker',
                 chunk_size: int = 1024 * 1024):
        """
        Args:
            tenant_prefix: Container name prefix identifying tenant containers
            docker_binary: docker executable to invoke
            chunk_size: Copy buffer size for the export stream
        """
        self.tenant_prefix = tenant_prefix
        self.docker_binary = docker_binary
        self.chunk_size = chunk_size

    def list_tenant_containers(self) -> List[str]:
        """
        List tenant container names (running or not).

        Raises:
            ExportError: If docker cannot be queried
        """
        try:
            completed = subprocess.run(
                [self.docker_binary, 'ps', '-a', '--format', '{{.Names}}'],
                capture_output=True,
                text=True,
                check=True
            )
        except FileNotFoundError:
            raise ExportError(f"docker binary not found: {self.docker_binary}")
        except subprocess.CalledProcessError as e:
            raise ExportError(f"docker ps failed: {e.stderr.strip() or e}")

        return parse_container_names(completed.stdout, self.tenant_prefix)

    def export(self, name: str, backup_dir: str) -> str:
        """
        Export a container filesystem to {backup_dir}/{name}.tar.gz.

        Returns:
            Path of the written archive

        Raises:
            ExportError: If the export fails
        """
        os.makedirs(backup_dir, exist_ok=True)
        out_path = os.path.join(backup_dir, f"{name}.tar.gz")

        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(
                    [self.docker_binary, 'export', name],
                    stdout=subprocess.PIPE,
                    stderr=stderr_file
                )
            except FileNotFoundError:
                raise ExportError(f"docker binary not found: {self.docker_binary}")

            try:
                with gzip.open(out_path, 'wb') as archive:
                    shutil.copyfileobj(process.stdout, archive, self.chunk_size)
            except OSError as e:
                process.kill()
                process.wait()
                _discard(out_path)
                raise ExportError(f"Failed to write export of {name}: {e}")
            finally:
                process.stdout.close()

            returncode = process.wait()
            if returncode != 0:
                stderr_file.seek(0)
                message = stderr_file.read().decode('utf-8', errors='replace').strip()
                _discard(out_path)
                raise ExportError(f"docker export {name} failed ({returncode}): {message}")

        return out_path


def parse_container_names(output: str, tenant_prefix: str) -> List[str]:
    """
    Extract tenant container names from `docker ps` output.

    Leading '/' is stripped and empty names are skipped.
    """
    names = []
    for line in output.splitlines():
        name = line.strip().lstrip('/')
        if name and name.startswith(tenant_prefix):
            names.append(name)
    return names


def create_exporter(exporter_type: str, config) -> ContainerExporter:
    """
    Factory function to create the container exporter.

    Raises:
        ValueError: If exporter_type is invalid
    """
    if exporter_type == 'docker':
        return DockerExporter(tenant_prefix=config.get('TENANT_PREFIX') or 'tenant_')
    raise ValueError(f"Invalid exporter type: {exporter_type}")


def _discard(path: str):
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove partial export {path}: {e}")
