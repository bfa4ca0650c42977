import asyncio
import unittest

from agent.approval import ApprovalGate, coerce_response, needs_approval
from agent.config import SecurityConfig
from agent.exceptions import ApprovalDeniedError, ApprovalRequiredError
from agent.response import ApprovalResponse, ToolCall, ToolDefinition
from security.policy import CapabilityPolicy


READ = ToolDefinition(name="read_file", description="Read a file", category="filesystem")
WRITE = ToolDefinition(name="write_file", description="Write a file", category="filesystem", dangerous=True)
CLOCK = ToolDefinition(name="clock", description="Current time", category="system")
SHELL = ToolDefinition(name="run_command", description="Run a command", category="terminal", dangerous=True)


def _policy(**overrides):
    config = SecurityConfig(audit_log_path="", **overrides)
    policy = CapabilityPolicy(config)
    for definition in (READ, WRITE, CLOCK, SHELL):
        policy.register_definition(definition)
    return policy


class TestNeedsApproval(unittest.TestCase):
    def test_static_table(self):
        self.assertTrue(needs_approval(WRITE, "conservative"))
        self.assertTrue(needs_approval(READ, "conservative"))
        self.assertFalse(needs_approval(CLOCK, "conservative"))
        self.assertTrue(needs_approval(WRITE, "balanced"))
        self.assertFalse(needs_approval(READ, "balanced"))
        self.assertFalse(needs_approval(WRITE, "trust"))

    def test_coerce_response(self):
        self.assertTrue(coerce_response(True).approved)
        response = coerce_response({"approved": False, "reason": "no", "withdrawn": True})
        self.assertEqual(response, ApprovalResponse(approved=False, reason="no", withdrawn=True))
        with self.assertRaises(TypeError):
            coerce_response("yes")


class TestApprovalGate(unittest.IsolatedAsyncioTestCase):
    async def test_balanced_auto_approves_safe_tools(self):
        asked = []
        gate = ApprovalGate(_policy(), "balanced", callback=lambda r: asked.append(r) or True)
        outcome = await gate.check(ToolCall("1", "read_file", {"path": "notes.txt"}), READ)
        self.assertEqual(outcome, "auto-approved")
        self.assertEqual(asked, [])

    async def test_dangerous_tool_asks_exactly_once(self):
        requests = []

        async def callback(request):
            requests.append(request)
            return ApprovalResponse(approved=True)

        policy = _policy()
        gate = ApprovalGate(policy, "balanced", callback=callback)
        outcome = await gate.check(ToolCall("1", "write_file", {"path": "out.txt", "content": "x"}), WRITE)

        self.assertEqual(outcome, "approved")
        self.assertEqual(len(requests), 1)
        self.assertEqual(requests[0].tool_name, "write_file")
        self.assertEqual(requests[0].risk, "high")
        self.assertEqual(requests[0].arguments, {"path": "out.txt", "content": "x"})
        self.assertEqual(policy.audit_log()[-1].outcome, "approved")

    async def test_conservative_asks_for_side_effect_categories(self):
        requests = []
        gate = ApprovalGate(_policy(), "conservative", callback=lambda r: requests.append(r) or True)
        await gate.check(ToolCall("1", "read_file", {"path": "notes.txt"}), READ)
        await gate.check(ToolCall("2", "clock", {}), CLOCK)
        self.assertEqual([r.tool_name for r in requests], ["read_file"])
        self.assertEqual(requests[0].risk, "medium")

    async def test_trust_never_asks(self):
        def callback(request):
            raise AssertionError("should not be asked")

        gate = ApprovalGate(_policy(), "trust", callback=callback)
        self.assertEqual(
            await gate.check(ToolCall("1", "write_file", {"path": "x", "content": ""}), WRITE),
            "auto-approved",
        )

    async def test_trust_still_honours_policy_denials(self):
        gate = ApprovalGate(_policy(blocked_commands=[r"rm\s+-rf\s+/"]), "trust")
        with self.assertRaises(ApprovalDeniedError) as ctx:
            await gate.check(ToolCall("1", "run_command", {"command": "rm -rf /"}), SHELL)
        self.assertFalse(ctx.exception.withdrawn)
        self.assertIn("blocked", ctx.exception.reason)

    async def test_user_denial_carries_reason(self):
        gate = ApprovalGate(
            _policy(), "balanced",
            callback=lambda r: ApprovalResponse(approved=False, reason="not today"),
        )
        with self.assertRaises(ApprovalDeniedError) as ctx:
            await gate.check(ToolCall("1", "write_file", {"path": "x", "content": ""}), WRITE)
        self.assertEqual(ctx.exception.reason, "not today")

    async def test_withdrawn_request(self):
        gate = ApprovalGate(
            _policy(), "balanced",
            callback=lambda r: {"approved": False, "withdrawn": True},
        )
        with self.assertRaises(ApprovalDeniedError) as ctx:
            await gate.check(ToolCall("1", "write_file", {"path": "x", "content": ""}), WRITE)
        self.assertTrue(ctx.exception.withdrawn)

    async def test_missing_callback_raises_approval_required(self):
        policy = _policy()
        gate = ApprovalGate(policy, "balanced")
        with self.assertRaises(ApprovalRequiredError):
            await gate.check(ToolCall("1", "write_file", {"path": "x", "content": ""}), WRITE)
        self.assertEqual(policy.audit_log()[-1].outcome, "denied")

    async def test_policy_requires_approval_even_in_balanced(self):
        policy = _policy()
        policy.register_definition(READ, always_require_approval=True)
        requests = []
        gate = ApprovalGate(policy, "balanced", callback=lambda r: requests.append(r) or True)
        await gate.check(ToolCall("1", "read_file", {"path": "a"}), READ)
        self.assertEqual(len(requests), 1)

    async def test_sync_callback_runs_off_the_event_loop(self):
        loop_thread = []

        def callback(request):
            try:
                asyncio.get_running_loop()
                loop_thread.append(True)
            except RuntimeError:
                loop_thread.append(False)
            return True

        gate = ApprovalGate(_policy(), "balanced", callback=callback)
        await gate.check(ToolCall("1", "write_file", {"path": "x", "content": ""}), WRITE)
        self.assertEqual(loop_thread, [False])

    def test_unknown_mode_rejected(self):
        gate = ApprovalGate(_policy())
        with self.assertRaises(ValueError):
            gate.set_mode("yolo")
        gate.set_mode("trust")
        self.assertEqual(gate.mode, "trust")
