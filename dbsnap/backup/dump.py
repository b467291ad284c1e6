"""
Dump executor - runs the native PostgreSQL export and restore tools.

Workflow for a dump:
1. Spawn pg_dump (custom format) with connection parameters in PG* env vars
2. Stream its stdout chunk by chunk into <target>.partial, optionally gzipped
3. Wait for the child, enforcing an optional timeout
4. Rename the partial file onto the target only if the child exited 0

Credentials are never placed on the command line, so they do not show up in
process listings or in the logged command.
"""

import logging
import os
import shlex
import subprocess
import tempfile
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from dbsnap.config import BackupConfig, DatabaseConnection
from .compression import CHUNK_SIZE, CompressionError, open_output_stream, iter_file_chunks
from .records import PARTIAL_SUFFIX, is_compressed_filename

logger = logging.getLogger(__name__)

DUMP_ARGS = ['--format=custom', '--verbose', '--clean', '--if-exists', '--create', '--no-password']
RESTORE_ARGS = ['--verbose', '--clean', '--if-exists', '--no-password']

# Only the tail of stderr is kept on errors; pg_dump --verbose is chatty
STDERR_TAIL = 4000


class ExecutionError(Exception):
    """Raised when a native tool fails to start or exits non-zero."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class DumpTimeoutError(ExecutionError):
    """Raised when a native tool is killed after exceeding its timeout."""
    pass


class StreamError(Exception):
    """Raised when writing or compressing dump output fails."""
    pass


@dataclass
class ProcessResult:
    """Outcome of a completed native tool run."""

    command: List[str]
    returncode: int
    duration: float
    stdout: str = ''
    stderr: str = field(default='', repr=False)


class _ProcessWatchdog:
    """Kills a child process that outlives its timeout."""

    def __init__(self, process: subprocess.Popen, timeout: Optional[float]):
        self.process = process
        self.timeout = timeout
        self._fired = threading.Event()
        self._timer = None

    def __enter__(self):
        if self.timeout:
            self._timer = threading.Timer(self.timeout, self._kill)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._timer:
            self._timer.cancel()
        return False

    def _kill(self):
        if self.process.poll() is None:
            self._fired.set()
            self.process.kill()

    @property
    def timed_out(self) -> bool:
        return self._fired.is_set()


def _read_tail(handle) -> str:
    handle.seek(0)
    data = handle.read()
    return data[-STDERR_TAIL:].decode('utf-8', errors='replace')


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial file {path}: {e}")


class DumpExecutor:
    """
    Runs pg_dump / pg_restore for one database connection.
    """

    def __init__(
        self,
        connection: DatabaseConnection,
        compress: bool = True,
        compression_level: int = 6,
        dump_timeout: Optional[float] = None,
        restore_timeout: Optional[float] = None,
        dump_command: Union[str, Sequence[str]] = 'pg_dump',
        restore_command: Union[str, Sequence[str]] = 'pg_restore'
    ):
        """
        Initialize dump executor.

        Args:
            connection: Database connection parameters
            compress: Gzip dump output by default
            compression_level: gzip level (1-9)
            dump_timeout: Seconds before a dump child is killed (None = no limit)
            restore_timeout: Seconds before a restore child is killed (None = no limit)
            dump_command: Dump tool executable, optionally with leading arguments
            restore_command: Restore tool executable, optionally with leading arguments
        """
        self.connection = connection
        self.compress = compress
        self.compression_level = compression_level
        self.dump_timeout = dump_timeout
        self.restore_timeout = restore_timeout
        self.dump_command = self._split(dump_command)
        self.restore_command = self._split(restore_command)

    @classmethod
    def from_config(cls, config: BackupConfig) -> 'DumpExecutor':
        return cls(
            connection=config.database,
            compress=config.compress,
            compression_level=config.compression_level,
            dump_timeout=config.dump_timeout,
            restore_timeout=config.restore_timeout,
            dump_command=config.dump_command,
            restore_command=config.restore_command
        )

    @staticmethod
    def _split(command: Union[str, Sequence[str]]) -> List[str]:
        if isinstance(command, str):
            return shlex.split(command)
        return list(command)

    def _child_env(self) -> dict:
        env = os.environ.copy()
        env.update(self.connection.to_env())
        return env

    def _spawn(self, command: List[str], **kwargs) -> subprocess.Popen:
        try:
            return subprocess.Popen(command, env=self._child_env(), **kwargs)
        except FileNotFoundError as e:
            raise ExecutionError(
                f"{command[0]} not found - install postgresql-client: {e}",
                command=command
            ) from e
        except OSError as e:
            raise ExecutionError(f"Failed to start {command[0]}: {e}", command=command) from e

    def execute_dump(self, output_path: str, compress: Optional[bool] = None) -> ProcessResult:
        """
        Dump the database into output_path.

        The file only appears under its final name once the dump tool has
        exited successfully; on any failure the partial file is removed.

        Args:
            output_path: Final path of the dump file
            compress: Override the executor's compression default

        Returns:
            ProcessResult with captured stderr

        Raises:
            ExecutionError: If pg_dump cannot start or exits non-zero
            DumpTimeoutError: If pg_dump exceeds dump_timeout
            StreamError: If writing the output fails
        """
        compress = self.compress if compress is None else compress
        command = self.dump_command + DUMP_ARGS
        partial_path = f"{output_path}{PARTIAL_SUFFIX}"

        logger.info(
            f"Starting database dump of {self.connection.database}@{self.connection.host} "
            f"(command: {' '.join(command)}, output: {output_path})"
        )
        started = time.monotonic()

        with tempfile.TemporaryFile() as stderr_file:
            process = self._spawn(command, stdout=subprocess.PIPE, stderr=stderr_file)

            try:
                with _ProcessWatchdog(process, self.dump_timeout) as watchdog:
                    try:
                        self._stream_to_file(process, partial_path, compress)
                    except StreamError:
                        process.kill()
                        raise
                    finally:
                        process.stdout.close()
                        returncode = process.wait()

                stderr = _read_tail(stderr_file)
                duration = time.monotonic() - started

                if watchdog.timed_out:
                    raise DumpTimeoutError(
                        f"{command[0]} timed out after {self.dump_timeout}s",
                        command=command, returncode=returncode, stderr=stderr
                    )

                if returncode != 0:
                    raise ExecutionError(
                        f"{command[0]} failed with exit code {returncode}: {stderr.strip()[-500:]}",
                        command=command, returncode=returncode, stderr=stderr
                    )

                os.replace(partial_path, output_path)

            except BaseException:
                _remove_quietly(partial_path)
                raise

        logger.info(f"Database dump completed in {duration:.1f}s: {output_path}")
        return ProcessResult(command=command, returncode=returncode, duration=duration, stderr=stderr)

    def _stream_to_file(self, process: subprocess.Popen, path: str, compress: bool):
        try:
            with open_output_stream(path, compress, self.compression_level) as out:
                while True:
                    chunk = process.stdout.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
        except (OSError, zlib.error) as e:
            raise StreamError(f"Failed to write dump to {path}: {e}") from e

    def execute_restore(self, backup_path: str) -> ProcessResult:
        """
        Restore the database from a dump file with pg_restore.

        Gzipped dumps are decompressed incrementally into pg_restore's stdin.

        Args:
            backup_path: Path to a .sql or .sql.gz dump

        Returns:
            ProcessResult with captured stdout/stderr

        Raises:
            FileNotFoundError: If backup_path does not exist
            ExecutionError: If pg_restore cannot start or exits non-zero
            DumpTimeoutError: If pg_restore exceeds restore_timeout
            StreamError: If the compressed dump cannot be read
        """
        if not os.path.isfile(backup_path):
            raise FileNotFoundError(f"Backup file not found: {backup_path}")

        compressed = is_compressed_filename(backup_path)
        command = self.restore_command + RESTORE_ARGS + [f'--dbname={self.connection.database}']
        if not compressed:
            command.append(backup_path)

        logger.info(f"Starting database restore from {backup_path} (command: {' '.join(command)})")
        started = time.monotonic()

        with tempfile.TemporaryFile() as stdout_file, tempfile.TemporaryFile() as stderr_file:
            process = self._spawn(
                command,
                stdin=subprocess.PIPE if compressed else subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=stderr_file
            )

            with _ProcessWatchdog(process, self.restore_timeout) as watchdog:
                try:
                    if compressed:
                        self._feed_stdin(process, backup_path)
                except StreamError:
                    process.kill()
                    raise
                finally:
                    returncode = process.wait()

            stdout = _read_tail(stdout_file)
            stderr = _read_tail(stderr_file)

        duration = time.monotonic() - started

        if watchdog.timed_out:
            raise DumpTimeoutError(
                f"{command[0]} timed out after {self.restore_timeout}s",
                command=command, returncode=returncode, stderr=stderr
            )

        if returncode != 0:
            raise ExecutionError(
                f"{command[0]} failed with exit code {returncode}: {stderr.strip()[-500:]}",
                command=command, returncode=returncode, stderr=stderr
            )

        logger.info(f"Database restore completed in {duration:.1f}s: {backup_path}")
        return ProcessResult(command=command, returncode=returncode, duration=duration, stdout=stdout, stderr=stderr)

    def _feed_stdin(self, process: subprocess.Popen, backup_path: str):
        try:
            for chunk in iter_file_chunks(backup_path, decompress=True):
                process.stdin.write(chunk)
        except BrokenPipeError:
            # pg_restore exited early; its exit code and stderr explain why
            pass
        except (CompressionError, OSError) as e:
            raise StreamError(f"Failed to read {backup_path}: {e}") from e
        finally:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass
