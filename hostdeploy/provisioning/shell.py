"""Local command execution and file writing helpers.

Every step of a deployment talks to the host through two injectable
callables, ``run_cmd`` and ``write_file``. Tests replace them with
recording fakes; ``--dry-run`` replaces execution with logging.
"""

import asyncio
import logging
import os
import shlex
import tempfile

logger = logging.getLogger(__name__)


def sudo_prefix():
    """Return the privilege-escalation prefix for the current user."""
    return [] if os.geteuid() == 0 else ["sudo"]


def _format(command):
    return " ".join(shlex.quote(part) for part in command)


def make_run_cmd(cwd=None, dry_run=False):
    """Create a run_cmd callable for local execution.

    The returned coroutine has the signature::

        run_cmd(command, privileged=False, timeout=600, log_output=False,
                cwd=None, input=None, env=None) -> (returncode, stdout, stderr)

    ``command`` is an argv list. ``privileged`` prepends ``sudo`` when not
    running as root; extra ``env`` keys are forwarded through sudo with
    ``--preserve-env``. Failures never raise: a timeout comes back as
    return code 1, a missing executable as 127.
    """
    default_cwd = cwd

    async def run_cmd(command, privileged=False, timeout=600, log_output=False, cwd=None, input=None, env=None):
        argv = list(command)
        if privileged:
            prefix = sudo_prefix()
            if prefix and env:
                prefix = prefix + [f"--preserve-env={','.join(sorted(env))}"]
            argv = prefix + argv

        if dry_run:
            logger.info(f"[dry-run] {_format(argv)}")
            return 0, "", ""

        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd or default_cwd,
                env=proc_env,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.debug(f"'{argv[0]}' not found on PATH")
            return 127, "", f"'{argv[0]}' not found"

        try:
            if log_output:
                stdout_lines, stderr_lines = [], []

                async def _read_stream(pipe, lines, level):
                    async for raw_line in pipe:
                        line = raw_line.decode(errors="replace").rstrip("\n")
                        logger.log(level, line)
                        lines.append(line)

                if input is not None:
                    proc.stdin.write(input.encode())
                    await proc.stdin.drain()
                    proc.stdin.close()

                await asyncio.wait_for(
                    asyncio.gather(
                        _read_stream(proc.stdout, stdout_lines, logging.INFO),
                        _read_stream(proc.stderr, stderr_lines, logging.INFO),
                        proc.wait(),
                    ),
                    timeout=timeout,
                )
                return proc.returncode, "\n".join(stdout_lines), "\n".join(stderr_lines)

            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
            stdout = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
            stderr = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
            return proc.returncode, stdout, stderr
        except TimeoutError:
            logger.error(f"Command timed out after {timeout}s: {_format(argv)}")
            proc.kill()
            await proc.wait()
            return 1, "", ""

    return run_cmd


def make_write_file(run_cmd, dry_run=False):
    """Create a write_file callable that installs content at an absolute path.

    Files are written to a temp file first and moved into place with
    ``install`` so that root-owned destinations work through sudo.
    """

    async def write_file(path, content, mode="644", privileged=True):
        if dry_run:
            logger.info(f"[dry-run] write {path}")
            return True

        with tempfile.NamedTemporaryFile(mode="w", suffix=f"_{os.path.basename(path)}", delete=False) as f:
            f.write(content)
            tmp_path = f.name

        try:
            rc, _, stderr = await run_cmd(["install", "-m", mode, tmp_path, path], privileged=privileged)
            if rc != 0:
                logger.error(f"Failed to write {path}: {stderr.strip()}")
            return rc == 0
        finally:
            os.unlink(tmp_path)

    return write_file
