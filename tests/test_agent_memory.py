import pytest

from agent_memory import AgentMemory, estimate_tokens

SYSTEM_PROMPT = "You are a log triage agent."


@pytest.fixture
def memory(sample_logs, deployment_changes):
    return AgentMemory(SYSTEM_PROMPT, sample_logs[-5:], deployment_changes)


def test_estimate_tokens_uses_utf8_length():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("é") == 1


class TestInitialization:
    def test_seeds_two_entries(self, memory, sample_logs):
        entries = memory.get_messages()
        assert [e.role for e in entries] == ["system", "user"]
        assert entries[0].content == SYSTEM_PROMPT
        assert "Initial logs (last 5 received)" in entries[1].content
        assert sample_logs[-1]["message"] in entries[1].content
        assert "Deployed auth-service v2.3.1" in entries[1].content

    def test_formatted_messages_exclude_system(self, memory):
        memory.add_assistant_message("")
        formatted = memory.get_formatted_messages_for_llm()
        assert [m["role"] for m in formatted] == ["user"]

    def test_token_counter_grows(self, memory):
        before = memory.approximate_tokens_used
        memory.add_user_message("x" * 40)
        assert memory.approximate_tokens_used == before + 10


class TestToolResults:
    def test_success_entry(self, memory):
        memory.add_tool_result("searchLogs", {"logsFound": 2})
        entry = memory.get_messages()[-1]
        assert entry.role == "tool"
        assert entry.content == 'Tool "searchLogs" executed: Result: {"logsFound": 2}'
        assert entry.tool_results[0].status == "success"
        assert entry.tool_results[0].result == {"logsFound": 2}

    def test_error_entry(self, memory):
        memory.add_tool_result("createTicket", None, "Invalid arguments")
        entry = memory.get_messages()[-1]
        assert entry.content == 'Tool "createTicket" executed: Error: Invalid arguments'
        assert entry.tool_results[0].status == "error"
        assert entry.tool_results[0].error == "Invalid arguments"

    def test_tool_entries_are_sent_to_the_model(self, memory):
        memory.add_tool_result("searchLogs", {"logsFound": 0})
        assert memory.get_formatted_messages_for_llm()[-1]["role"] == "tool"


class TestCompression:
    def test_no_compression_under_budget(self, sample_logs, deployment_changes):
        memory = AgentMemory(SYSTEM_PROMPT, sample_logs, deployment_changes, max_tokens=1_000_000)
        for i in range(20):
            memory.add_user_message(f"message {i}")
        assert len(memory.get_messages()) == 22

    def test_no_compression_with_few_entries(self, sample_logs, deployment_changes):
        memory = AgentMemory(SYSTEM_PROMPT, sample_logs, deployment_changes, max_tokens=1)
        for i in range(7):
            memory.add_user_message(f"message {i}")
        assert len(memory.get_messages()) == 9

    def test_compression_keeps_head_and_tail(self, sample_logs, deployment_changes):
        memory = AgentMemory(SYSTEM_PROMPT, sample_logs, deployment_changes, max_tokens=1_000)
        head = [e.model_copy(deep=True) for e in memory.get_messages()[:2]]

        for i in range(30):
            memory.add_assistant_message(f"step {i} " + "y" * 200)

        entries = memory.get_messages()
        assert entries[:2] == head
        assert entries[2].role == "user"
        assert entries[2].content.startswith("[Previous conversation - ")
        assert entries[2].content.endswith(" turns summarized]")
        assert entries[-1].content.startswith("step 29 ")
        assert len(entries) < 2 + 30

    def test_counter_is_recomputed_after_compression(self, sample_logs, deployment_changes):
        memory = AgentMemory(
            SYSTEM_PROMPT, sample_logs, deployment_changes,
            max_tokens=10, token_estimator=lambda text: 100,
        )
        for i in range(7):
            memory.add_user_message(f"m{i}")
        assert memory.approximate_tokens_used == 800

        memory.add_user_message("m7")
        assert memory.approximate_tokens_used == 100

    def test_summary_counts_collapsed_entries(self, sample_logs, deployment_changes):
        memory = AgentMemory(
            SYSTEM_PROMPT, sample_logs, deployment_changes,
            max_tokens=10, token_estimator=lambda text: 100,
        )
        for i in range(8):
            memory.add_user_message(f"m{i}")

        entries = memory.get_messages()
        # Ten entries: two protected, three collapsed, five recent.
        assert entries[2].content == "[Previous conversation - 3 turns summarized]"
        assert [e.content for e in entries[3:]] == [f"m{i}" for i in range(3, 8)]

    def test_protected_entries_survive_many_compressions(self, sample_logs, deployment_changes):
        memory = AgentMemory(
            SYSTEM_PROMPT, sample_logs, deployment_changes,
            max_tokens=10, token_estimator=lambda text: 100,
        )
        original = [e.content for e in memory.get_messages()[:2]]
        for i in range(100):
            memory.add_tool_result("searchLogs", {"i": i})
        assert [e.content for e in memory.get_messages()[:2]] == original


class TestSerialization:
    def test_round_trip(self, memory, sample_logs, deployment_changes):
        memory.add_user_message("What failed?")
        memory.add_assistant_message("Checking.")
        memory.add_tool_result("searchLogs", {"logsFound": 1})
        state = memory.serialize()

        assert set(state) == {"entries", "approximateTokensUsed"}
        assert state["entries"][-1]["toolResults"][0]["toolName"] == "searchLogs"

        restored = AgentMemory.restore(SYSTEM_PROMPT, sample_logs[-5:], deployment_changes, state)
        assert restored.get_messages() == memory.get_messages()
        assert restored.approximate_tokens_used == memory.approximate_tokens_used
        assert restored.serialize() == state

    def test_restore_empty_state_yields_two_entries(self, sample_logs, deployment_changes):
        empty = {"entries": [], "approximateTokensUsed": 0}
        restored = AgentMemory.restore(SYSTEM_PROMPT, sample_logs, deployment_changes, empty)
        assert len(restored.get_messages()) == 2
        assert restored.approximate_tokens_used > 0

    def test_restore_none(self, sample_logs, deployment_changes):
        restored = AgentMemory.restore(SYSTEM_PROMPT, sample_logs, deployment_changes, None)
        assert len(restored.get_messages()) == 2

    def test_clear(self, memory):
        memory.add_user_message("hello")
        memory.clear()
        assert len(memory.get_messages()) == 2
