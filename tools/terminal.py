"""Terminal tool - run a shell command in a subprocess."""

import asyncio
import os

from pydantic import BaseModel, Field

from tools.base_tool import Tool


MAX_OUTPUT_CHARS = 50000


class RunCommandParams(BaseModel):
    command: str = Field(..., min_length=1, description="Shell command to run.")
    cwd: str | None = Field(default=None, description="Working directory.")
    timeout: float = Field(default=30.0, gt=0, description="Seconds before the command is killed.")


class RunCommandTool(Tool):
    name = "run_command"
    description = "Run a shell command and return its exit code and combined output."
    category = "terminal"
    dangerous = True
    Params = RunCommandParams

    async def execute(self, params: RunCommandParams) -> dict:
        process = await asyncio.create_subprocess_shell(
            params.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=params.cwd,
            env={**os.environ, "PYTHONDONTWRITEBYTECODE": "1"},
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=params.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return {
                "exit_code": None,
                "output": f"[Execution timed out after {params.timeout}s]",
            }

        output = stdout.decode("utf-8", errors="replace").strip()
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n\n[Output truncated at {MAX_OUTPUT_CHARS} characters]"
        return {"exit_code": process.returncode, "output": output or "[No output]"}
