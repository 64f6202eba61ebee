"""Subprocess helper shared by the concrete adapters."""

import logging
import os
import subprocess
from typing import Dict, List, Optional, Sequence

from ..errors import AdapterError

logger = logging.getLogger(__name__)


class CommandRunner:
    """
    Runs external tools with a timeout and turns failures into AdapterError.

    Adapters hold one runner; tests swap in a recording fake with the same
    run() signature.
    """

    def run(
        self,
        args: Sequence[str],
        timeout: float,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a command.

        Args:
            args: argv list (never a shell string)
            timeout: Seconds before the process is killed
            env: Extra environment variables layered on os.environ
            input_text: Optional stdin
            check: Raise AdapterError on non-zero exit

        Raises:
            AdapterError: Tool missing, timeout, or non-zero exit with check=True
        """
        args = [str(a) for a in args]
        logger.debug(f"Running: {' '.join(args)}")

        full_env = None
        if env:
            full_env = {**os.environ, **env}

        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=full_env,
                input=input_text,
            )
        except FileNotFoundError as e:
            raise AdapterError(f"Tool not found: {args[0]}", code="TOOL_MISSING") from e
        except subprocess.TimeoutExpired as e:
            raise AdapterError(
                f"{args[0]} timed out after {timeout}s",
                code="TOOL_TIMEOUT",
                details={"command": args[:2]},
            ) from e

        if check and result.returncode != 0:
            raise AdapterError(
                f"{args[0]} exited with {result.returncode}: {result.stderr.strip()[:500]}",
                code="TOOL_FAILED",
                details={"command": args[:2], "returncode": result.returncode},
            )
        return result


def output_lines(result: subprocess.CompletedProcess) -> List[str]:
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
