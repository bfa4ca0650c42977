"""Interactive CLI for tiered agents."""

import asyncio
import json
import sys

from agent.agent_context import AgentContext
from agent.approval import APPROVAL_MODES
from agent.config import AgentConfig
from agent.exceptions import AgentError
from agent.response import ApprovalRequest, ApprovalResponse, ChunkType
from providers.factory import build_backends


# ANSI color codes
RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
CYAN = "\033[36m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"

RISK_COLORS = {"low": DIM, "medium": YELLOW, "high": RED}


class CLIApp:
    """Interactive REPL with streaming output."""

    def __init__(self, config: AgentConfig, profile: str = "default"):
        self.config = config
        self.profile = profile
        self.context: AgentContext | None = None

    async def run(self):
        """Main REPL loop."""
        self._print_banner()

        if not await self._preflight():
            return

        print()
        await self._new_session()

        while True:
            try:
                user_input = input(f"{BOLD}You:{RESET} ").strip()
            except (EOFError, KeyboardInterrupt):
                print(f"\n{DIM}Goodbye!{RESET}")
                break

            if not user_input:
                continue

            # Commands
            command = user_input.lower()
            if command in ("exit", "quit", "/exit", "/quit"):
                print(f"{DIM}Goodbye!{RESET}")
                break
            if command in ("reset", "/reset", "/new"):
                await self._new_session()
                print(f"{DIM}[Session reset]{RESET}")
                continue
            if command in ("stats", "/stats"):
                self._print_stats()
                continue
            if command.startswith("/mode"):
                self._set_mode(user_input)
                continue
            if command in ("help", "/help"):
                self._print_help()
                continue

            print()
            try:
                await self._run_turn(user_input)
            except AgentError as e:
                print(f"\n{RED}[Error: {e}]{RESET}")
                continue
            print()
        self.context.close()

    async def _run_turn(self, user_input: str):
        print(f"{BOLD}{GREEN}Agent:{RESET} ", end="")
        printed = False
        async for chunk in self.context.agent.run_stream(user_input):
            if chunk.type == ChunkType.TEXT:
                sys.stdout.write(chunk.content)
                sys.stdout.flush()
                printed = True
            elif chunk.type == ChunkType.TOOL_CALL_END and chunk.tool_call is not None:
                print(f"\n{CYAN}{DIM}[Calling {chunk.tool_call.name}]{RESET}")
            elif chunk.type == ChunkType.TOOL_RESULT and chunk.tool_result is not None:
                result = chunk.tool_result
                if result.error:
                    detail = f" ({result.reason})" if result.reason else ""
                    print(f"{RED}{DIM}[Tool error: {result.error}{detail}]{RESET}")
                else:
                    print(f"{DIM}[Tool result: {_preview(result.result)}]{RESET}")
                printed = False
            elif chunk.type == ChunkType.DONE and chunk.content and not printed:
                # max-iterations fallback arrives only on the closing chunk
                sys.stdout.write(chunk.content)
        print()

    async def _approval_prompt(self, request: ApprovalRequest) -> ApprovalResponse:
        """Ask on the terminal; the blocking read runs off the event loop."""
        color = RISK_COLORS.get(request.risk, YELLOW)
        print(f"\n{color}{BOLD}[Approval required]{RESET} {request.description}")
        print(f"{DIM}  tool: {request.tool_name}  risk: {request.risk} ({request.policy_risk}){RESET}")
        print(f"{DIM}  args: {_preview(request.arguments, 300)}{RESET}")
        answer = await asyncio.to_thread(input, f"{BOLD}Allow? [y/N]:{RESET} ")
        approved = answer.strip().lower() in ("y", "yes")
        return ApprovalResponse(approved=approved, reason=None if approved else "Denied at terminal")

    async def _new_session(self):
        """Create a fresh session, closing the previous one."""
        if self.context is not None:
            self.context.close()
        self.context = AgentContext(
            self.config,
            approval_callback=self._approval_prompt,
            profile=self.profile,
        )
        await self.context.initialize()
        backend = self.context.selector.current_backend_id or "none"
        print(f"{DIM}[Session {self.context.id} on {backend}, approval mode {self.context.gate.mode}]{RESET}")

    def _set_mode(self, user_input: str):
        parts = user_input.split(maxsplit=1)
        if len(parts) < 2 or parts[1].strip() not in APPROVAL_MODES:
            print(f"{YELLOW}[Usage] /mode {'|'.join(APPROVAL_MODES)}{RESET}")
            return
        self.context.gate.set_mode(parts[1].strip())
        print(f"{DIM}[Approval mode: {self.context.gate.mode}]{RESET}")

    def _print_stats(self):
        router = self.context.router
        ctx = self.context.context_manager.stats()
        print(f"{DIM}Backend: {self.context.selector.current_backend_id or 'none'}"
              f"{' (fallback)' if self.context.selector.is_using_fallback else ''}")
        print(f"Tiering: {'on' if router.is_tiering_enabled() else 'off'}; {router.savings_summary()}")
        print(f"By complexity: {json.dumps(router.stats()['by_complexity'])}")
        print(f"Context: {ctx['message_count']} messages, {ctx['total_tokens']} tokens "
              f"({ctx['usage_percent']:.1f}% of {self.context.context_manager.max_context_tokens}){RESET}")

    def _print_banner(self):
        print(f"""
{BOLD}{CYAN}╔══════════════════════════════════════╗
║          Tiered Agents v0.1.0        ║
║     Local + cloud LLM agent loop     ║
╚══════════════════════════════════════╝{RESET}
{DIM}Providers: {', '.join(self.config.provider_priority)}
Tiering: {'on' if self.config.tiering.enabled else 'off'} (local: {self.config.tiering.local_provider})
Approval mode: {self.config.tool_approval.mode}{RESET}
""")

    def _print_help(self):
        print(f"""
{BOLD}Commands:{RESET}
  {CYAN}/reset{RESET}  Start a new session
  {CYAN}/stats{RESET}  Show routing and context statistics
  {CYAN}/mode{RESET} <conservative|balanced|trust>  Change the approval mode
  {CYAN}/help{RESET}   Show this help
  {CYAN}/exit{RESET}   Quit

{BOLD}How it works:{RESET}
  Each message runs the agent loop until it answers. Simple turns
  may be answered by the local model; tool use always goes to the
  cloud chain. Dangerous tools ask for approval here first.
""")

    async def _preflight(self) -> bool:
        """Probe every configured backend before starting."""
        reachable = []
        for backend_id, backend in build_backends(self.config).items():
            ok = await backend.is_available()
            color = GREEN if ok else RED
            print(f"{DIM}{backend_id:<10}{RESET} {color}{'available' if ok else 'unavailable'}{RESET}"
                  f" {DIM}({backend.model}){RESET}")
            if ok:
                reachable.append(backend_id)
        if not any(b in reachable for b in self.config.provider_priority):
            print(f"{RED}[Error] None of the configured providers is reachable{RESET}")
            print(f"{DIM}Set API keys in .env or start Ollama: ollama serve{RESET}")
            return False
        return True


def _preview(value, limit: int = 200) -> str:
    text = json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "..."
