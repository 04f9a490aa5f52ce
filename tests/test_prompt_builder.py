"""Tests for tavern_gen.prompt_builder — fixed blocks, budgeted history, depth injections."""

import pytest

from conftest import char_message, user_message
from tavern_gen.errors import ConfigurationError
from tavern_gen.models import (
    ChatMessage,
    ChatMetadata,
    LoreBook,
    LoreEntry,
    LorePosition,
    PromptDefinition,
    PromptOverrides,
    SamplerSettings,
)
from tavern_gen.prompt_builder import PromptBuilder


def _sampler(**kwargs) -> SamplerSettings:
    prompts = kwargs.pop("prompts", None)
    if prompts is None:
        prompts = [
            PromptDefinition(identifier="main", content="a b c"),
            PromptDefinition(identifier="chatHistory", marker=True),
        ]
    return SamplerSettings(prompts=prompts, **kwargs)


@pytest.fixture
def build(rin, persona, tokenizer):
    def _build(history, *, characters=None, sampler=None, **kwargs):
        builder = PromptBuilder(
            characters=characters or [rin],
            persona=persona,
            history=history,
            sampler=sampler or SamplerSettings(),
            tokenizer=tokenizer,
            **kwargs,
        )
        return builder, builder.build()

    return _build


class TestFixedBlocks:
    def test_default_prompt_order(self, build) -> None:
        _, messages = build([user_message("Hello there.")])
        assert [m.content for m in messages] == [
            "Write Rin's next reply in a fictional chat between Rin and Alex.",
            "Rin is a wandering swordswoman.",
            "stoic",
            "A roadside inn.",
            "A traveling merchant.",
            "Hello there.",
        ]
        assert messages[-1].role == "user"
        assert messages[-1].name == "Alex"

    def test_disabled_blocks_skipped(self, build) -> None:
        prompts = [
            PromptDefinition(identifier="main", content="keep"),
            PromptDefinition(identifier="extra", content="skip", enabled=False),
            PromptDefinition(identifier="chatHistory", marker=True),
        ]
        _, messages = build([user_message("hi")], sampler=_sampler(prompts=prompts))
        assert [m.content for m in messages] == ["keep", "hi"]

    def test_no_enabled_blocks(self, build) -> None:
        prompts = [PromptDefinition(identifier="main", content="x", enabled=False)]
        with pytest.raises(ConfigurationError):
            build([], sampler=_sampler(prompts=prompts))

    def test_no_participants(self, persona, tokenizer) -> None:
        with pytest.raises(ConfigurationError):
            PromptBuilder(characters=[], persona=persona, history=[], sampler=SamplerSettings(), tokenizer=tokenizer)

    def test_custom_block_roles_get_names(self, build) -> None:
        prompts = [
            PromptDefinition(identifier="u", role="user", content="from user"),
            PromptDefinition(identifier="a", role="assistant", content="from {{char}}"),
        ]
        _, messages = build([], sampler=_sampler(prompts=prompts))
        assert [(m.role, m.name, m.content) for m in messages] == [
            ("user", "Alex", "from user"),
            ("assistant", "Rin", "from Rin"),
        ]

    def test_group_fields_rendered_per_participant(self, build, rin, kai) -> None:
        prompts = [PromptDefinition(identifier="charDescription", marker=True)]
        _, messages = build([], characters=[rin, kai], sampler=_sampler(prompts=prompts))
        assert messages[0].content == "Rin is a wandering swordswoman.\nKai is a fox spirit."

    def test_dialogue_examples_spaced_with_lore(self, build, rin) -> None:
        prompts = [PromptDefinition(identifier="dialogueExamples", marker=True)]
        speaker = rin.model_copy(update={"mes_example": "<START>\n{{user}}: Hi\n{{char}}: Hm."})
        book = LoreBook(name="w", entries=[
            LoreEntry(uid=1, content="Before.", constant=True, position=LorePosition.EM_BEFORE),
            LoreEntry(uid=2, content="After.", constant=True, position=LorePosition.EM_AFTER),
        ])
        builder, messages = build([], characters=[speaker], sampler=_sampler(prompts=prompts), books=[book])
        assert [m.content for m in messages] == [
            "Before.",
            "<START>\n\nAlex: Hi\n\nRin: Hm.",
            "After.",
        ]
        assert builder.breakdown.examples == 7

    def test_scenario_override(self, build) -> None:
        prompts = [PromptDefinition(identifier="scenario", marker=True)]
        metadata = ChatMetadata(prompt_overrides=PromptOverrides(scenario="{{user}}'s ship."))
        _, messages = build([], sampler=_sampler(prompts=prompts), metadata=metadata)
        assert messages[0].content == "Alex's ship."

    def test_authors_note_with_lore(self, build) -> None:
        prompts = [PromptDefinition(identifier="authorsNote", marker=True)]
        metadata = ChatMetadata(prompt_overrides=PromptOverrides(authors_note="Keep it short."))
        book = LoreBook(name="w", entries=[
            LoreEntry(uid=1, content="Lore first.", constant=True, position=LorePosition.AN_BEFORE),
        ])
        _, messages = build([], sampler=_sampler(prompts=prompts), metadata=metadata, books=[book])
        assert messages[0].content == "Lore first.\nKeep it short."

    def test_breakdown(self, build) -> None:
        builder, _ = build([user_message("one two three")])
        assert builder.breakdown.description == 5
        assert builder.breakdown.chat_history == 3
        assert builder.breakdown.prompt_total == builder.breakdown.system_total + 3


class TestHistoryBudget:
    def test_keeps_newest_contiguous_suffix(self, build) -> None:
        history = [user_message(f"m{i} w w w") for i in range(5)]
        # budget = 20 - 3 fixed - 5 reserved = 12 -> three 4-word messages
        _, messages = build(history, sampler=_sampler(max_context=20, max_tokens=5))
        assert [m.content for m in messages] == ["a b c", "m2 w w w", "m3 w w w", "m4 w w w"]

    def test_stops_at_first_unit_that_does_not_fit(self, build, rin) -> None:
        history = [
            user_message("hi"),
            char_message(rin, "one two three four five six seven eight nine ten"),
            user_message("w x y z"),
        ]
        _, messages = build(history, sampler=_sampler(max_context=20, max_tokens=5))
        # "hi" would fit on its own, but the walk stopped at the long message
        assert [m.content for m in messages] == ["a b c", "w x y z"]

    def test_smaller_context_never_keeps_more(self, build, rin) -> None:
        history = []
        for i in range(8):
            history.append(user_message(" ".join(["w"] * (i % 3 + 1))))
            history.append(char_message(rin, " ".join(["r"] * (i % 4 + 1))))
        previous = None
        for max_context in range(40, 7, -1):
            _, messages = build(history, sampler=_sampler(max_context=max_context, max_tokens=5))
            kept = len(messages) - 1
            if previous is not None:
                assert kept <= previous
            previous = kept

    def test_smaller_context_never_keeps_more_with_lore(self, build) -> None:
        history = [user_message(f"the dragon stirs {i}") for i in range(40)]
        prompts = [
            PromptDefinition(identifier="main", content="a b c"),
            PromptDefinition(identifier="worldInfoBefore", marker=True),
            PromptDefinition(identifier="chatHistory", marker=True),
        ]
        lore_text = " ".join(["lore"] * 24)
        book = LoreBook(name="w", entries=[LoreEntry(uid=1, key=["dragon"], content=lore_text)])

        previous = None
        seen_lore = set()
        for max_context in range(160, 19, -1):
            builder, messages = build(
                history, sampler=_sampler(prompts=prompts, max_context=max_context, max_tokens=5), books=[book],
            )
            seen_lore.add(any(m.content == lore_text for m in messages))
            assert builder.breakdown.prompt_total <= max_context - 5
            kept = sum(1 for m in messages if m.role == "user")
            if previous is not None:
                assert kept <= previous, max_context
            previous = kept
        # the sweep covers contexts with and without the entry
        assert seen_lore == {True, False}

    def test_no_budget_no_history(self, build) -> None:
        _, messages = build([user_message("hi")], sampler=_sampler(max_context=8, max_tokens=5))
        assert [m.content for m in messages] == ["a b c"]

    def test_system_messages_skipped(self, build) -> None:
        history = [user_message("hi"), ChatMessage(name="System", is_system=True, mes="hidden")]
        _, messages = build(history, sampler=_sampler())
        assert [m.content for m in messages] == ["a b c", "hi"]

    def test_history_macros(self, build) -> None:
        _, messages = build([user_message("Hi {{char}}")], sampler=_sampler())
        assert messages[-1].content == "Hi Rin"

    def test_tool_invocations_are_one_unit(self, build, rin) -> None:
        call = char_message(rin, "")
        call.extra["tool_invocations"] = [
            {"id": "c1", "name": "roll", "parameters": '{"die": 20}', "result": "17"},
        ]
        _, messages = build([user_message("Roll it."), call], sampler=_sampler())
        assert [m.role for m in messages] == ["system", "user", "assistant", "tool"]
        assistant, tool = messages[2], messages[3]
        assert assistant.content is None
        assert assistant.tool_calls[0].function.name == "roll"
        assert tool.tool_call_id == "c1"
        assert tool.content == "17"

    def test_tool_unit_dropped_whole(self, build, rin) -> None:
        call = char_message(rin, "")
        call.extra["tool_invocations"] = [
            {"id": "c1", "name": "roll", "parameters": "a b c d e f", "result": "g h i j k l"},
        ]
        history = [user_message("Roll it."), call, user_message("x")]
        _, messages = build(history, sampler=_sampler(max_context=20, max_tokens=5))
        assert [m.role for m in messages] == ["system", "user"]


class TestDepthInjection:
    def _book(self, depth: int) -> LoreBook:
        return LoreBook(name="w", entries=[
            LoreEntry(uid=1, content="Injected.", constant=True, position=LorePosition.AT_DEPTH, depth=depth),
        ])

    def test_depth_one_goes_before_newest(self, build, rin) -> None:
        history = [user_message("one"), char_message(rin, "two"), user_message("three")]
        _, messages = build(history, sampler=_sampler(), books=[self._book(1)])
        assert [m.content for m in messages] == ["a b c", "one", "two", "Injected.", "three"]

    def test_depth_zero_goes_last(self, build) -> None:
        _, messages = build([user_message("one")], sampler=_sampler(), books=[self._book(0)])
        assert [m.content for m in messages] == ["a b c", "one", "Injected."]

    def test_injections_counted_as_lore(self, build) -> None:
        builder, _ = build([user_message("one")], sampler=_sampler(), books=[self._book(0)])
        assert builder.breakdown.lore == 1
