"""Tests for tavern_gen.lore — keyword activation, budget, recursion, groups, placement."""

import random

import pytest

from conftest import char_message, user_message
from tavern_gen.lore import LoreProcessor, match_key
from tavern_gen.macros import MacroContext
from tavern_gen.models import LoreBook, LoreEntry, LorePosition, LoreSettings, SelectiveLogic


def _entry(uid: int, content: str, key=(), **kwargs) -> LoreEntry:
    return LoreEntry(uid=uid, key=list(key), content=content, **kwargs)


@pytest.fixture
def run(rin, persona, tokenizer):
    """Process lore for `entries` over a chat whose messages are `texts` (user messages)."""

    def _run(entries, texts=("I saw a dragon.",), *, max_context=4096, seed=1, history=None, **settings):
        book = LoreBook(name="world", entries=list(entries))
        history = history if history is not None else [user_message(t) for t in texts]
        processor = LoreProcessor(
            history, [book], LoreSettings(**settings), MacroContext([rin], persona),
            max_context, tokenizer, random.Random(seed),
        )
        return processor.process()

    return _run


def _uids(result) -> list[int]:
    return [e.uid for entries in result.triggered.values() for e in entries]


class TestMatchKey:
    def test_substring_case_insensitive(self) -> None:
        assert match_key("A DRAGON!", "dragon", case_sensitive=False, whole_words=False)

    def test_case_sensitive(self) -> None:
        assert not match_key("A DRAGON!", "dragon", case_sensitive=True, whole_words=False)

    def test_whole_words(self) -> None:
        assert not match_key("concatenate", "cat", case_sensitive=False, whole_words=True)
        assert match_key("the cat sat", "cat", case_sensitive=False, whole_words=True)
        assert match_key("cat.", "cat", case_sensitive=False, whole_words=True)

    def test_regex_key_with_flags(self) -> None:
        assert match_key("a DRAKON roars", "/dra(g|k)on/i", case_sensitive=True, whole_words=False)
        assert not match_key("a DRAKON roars", "/dra(g|k)on/", case_sensitive=False, whole_words=False)

    def test_invalid_regex_does_not_match(self) -> None:
        assert not match_key("anything", "/(unclosed/", case_sensitive=False, whole_words=False)


class TestActivation:
    def test_keyword_in_recent_message(self, run) -> None:
        result = run([_entry(1, "Dragons breathe fire.", ["dragon"])])
        assert result.before == "Dragons breathe fire."
        assert _uids(result) == [1]

    def test_no_match(self, run) -> None:
        result = run([_entry(1, "Elves sing.", ["elf"])])
        assert result.is_empty
        assert result.before == ""

    def test_constant_always_fires(self, run) -> None:
        result = run([_entry(1, "The world is round.", constant=True)], texts=["nothing relevant"])
        assert _uids(result) == [1]

    def test_disabled_never_fires(self, run) -> None:
        result = run([_entry(1, "x", ["dragon"], disable=True)])
        assert result.is_empty

    def test_scan_depth_limits_window(self, run) -> None:
        texts = ["I saw a dragon.", "Then we ate.", "And slept."]
        assert run([_entry(1, "x", ["dragon"])], texts, scan_depth=2).is_empty
        assert _uids(run([_entry(1, "x", ["dragon"])], texts, scan_depth=3)) == [1]

    def test_entry_scan_depth_overrides_global(self, run) -> None:
        texts = ["I saw a dragon.", "Then we ate."]
        assert _uids(run([_entry(1, "x", ["dragon"], scan_depth=2)], texts, scan_depth=1)) == [1]

    def test_keys_go_through_macros(self, run) -> None:
        result = run([_entry(1, "About Rin.", ["{{char}}"])], texts=["Where is Rin?"])
        assert _uids(result) == [1]

    def test_delay_needs_enough_messages(self, run) -> None:
        assert run([_entry(1, "x", ["dragon"], delay=3)]).is_empty

    def test_character_description_source(self, run) -> None:
        entry = _entry(1, "Swords are sharp.", ["swordswoman"], match_character_description=True)
        assert _uids(run([entry], texts=["hi"])) == [1]

    @pytest.mark.parametrize("logic,secondary,fires", [
        (SelectiveLogic.AND_ANY, ["red", "blue"], True),
        (SelectiveLogic.AND_ALL, ["red", "blue"], False),
        (SelectiveLogic.AND_ALL, ["red"], True),
        (SelectiveLogic.NOT_ALL, ["red", "blue"], True),
        (SelectiveLogic.NOT_ALL, ["red"], False),
        (SelectiveLogic.NOT_ANY, ["blue"], True),
        (SelectiveLogic.NOT_ANY, ["red"], False),
    ])
    def test_selective_logic(self, run, logic, secondary, fires) -> None:
        entry = _entry(1, "x", ["dragon"], keysecondary=secondary, selective_logic=logic)
        result = run([entry], texts=["a red dragon"])
        assert (not result.is_empty) is fires

    def test_character_filter(self, run) -> None:
        only_kai = _entry(1, "x", ["dragon"], character_filter_names=["Kai"])
        not_kai = _entry(2, "y", ["dragon"], character_filter_names=["Kai"], character_filter_exclude=True)
        by_tag = _entry(3, "z", ["dragon"], character_filter_tags=["Human"])
        assert sorted(_uids(run([only_kai, not_kai, by_tag]))) == [2, 3]

    def test_probability_zero_never_fires(self, run) -> None:
        result = run([_entry(1, "x", ["dragon"], use_probability=True, probability=0)])
        assert result.is_empty


class TestOrderingAndBudget:
    def test_lower_order_first(self, run) -> None:
        entries = [_entry(1, "second", ["dragon"], order=20), _entry(2, "first", ["dragon"], order=10)]
        assert run(entries).before == "first\nsecond"

    def test_budget_is_a_hard_cap(self, run) -> None:
        entries = [
            _entry(1, "one two three four five six", ["dragon"], order=1),
            _entry(2, "seven eight nine ten eleven twelve", ["dragon"], order=2),
            _entry(3, "tiny", ["dragon"], order=3),
        ]
        # 10% of 100 tokens = 10 words
        result = run(entries, max_context=100, budget_percent=10)
        assert _uids(result) == [1]
        assert result.overflowed
        assert result.tokens_used == 6

    def test_budget_cap(self, run) -> None:
        entries = [_entry(1, "one two three", ["dragon"])]
        result = run(entries, budget_cap=2)
        assert result.is_empty
        assert result.overflowed

    def test_within_budget(self, run) -> None:
        entries = [_entry(1, "a b", ["dragon"]), _entry(2, "c d", ["dragon"])]
        result = run(entries, max_context=100, budget_percent=10)
        assert not result.overflowed
        assert result.tokens_used == 4


class TestRecursion:
    ENTRIES = [
        _entry(1, "Dragons nest in the Ember Peaks.", ["dragon"], order=1),
        _entry(2, "The Ember Peaks are volcanic.", ["ember peaks"], order=2),
    ]

    def test_disabled_by_default(self, run) -> None:
        assert _uids(run(self.ENTRIES)) == [1]

    def test_activated_content_triggers_others(self, run) -> None:
        assert _uids(run(self.ENTRIES, recursive=True, max_recursion_steps=3)) == [1, 2]

    def test_zero_steps_is_single_pass(self, run) -> None:
        assert _uids(run(self.ENTRIES, recursive=True, max_recursion_steps=0)) == [1]

    def test_prevent_recursion(self, run) -> None:
        entries = [self.ENTRIES[0].model_copy(update={"prevent_recursion": True}), self.ENTRIES[1]]
        assert _uids(run(entries, recursive=True, max_recursion_steps=3)) == [1]

    def test_exclude_recursion(self, run) -> None:
        entries = [self.ENTRIES[0], self.ENTRIES[1].model_copy(update={"exclude_recursion": True})]
        assert _uids(run(entries, recursive=True, max_recursion_steps=3)) == [1]

    def test_delay_until_recursion(self, run) -> None:
        late = _entry(3, "Late fact.", ["dragon"], order=3, delay_until_recursion=True)
        assert _uids(run([self.ENTRIES[0], late])) == [1]
        assert _uids(run([self.ENTRIES[0], late], recursive=True, max_recursion_steps=3)) == [1, 3]


class TestInclusionGroups:
    def test_one_entry_per_group(self, run) -> None:
        entries = [
            _entry(1, "a", ["dragon"], group="weather"),
            _entry(2, "b", ["dragon"], group="weather"),
            _entry(3, "c", ["dragon"]),
        ]
        uids = _uids(run(entries))
        assert 3 in uids
        assert len([u for u in uids if u in (1, 2)]) == 1

    def test_override_wins(self, run) -> None:
        entries = [
            _entry(1, "a", ["dragon"], group="g", order=1),
            _entry(2, "b", ["dragon"], group="g", order=2, group_override=True),
        ]
        for seed in range(5):
            assert _uids(run(entries, seed=seed)) == [2]

    def test_group_scoring_prefers_more_matched_keys(self, run) -> None:
        entries = [
            _entry(1, "a", ["dragon"], group="g"),
            _entry(2, "b", ["dragon", "red"], group="g"),
        ]
        for seed in range(5):
            assert _uids(run(entries, texts=["a red dragon"], seed=seed, use_group_scoring=True)) == [2]

    def test_zero_weight_is_never_picked(self, run) -> None:
        entries = [
            _entry(1, "a", ["dragon"], group="g", group_weight=0),
            _entry(2, "b", ["dragon"], group="g", group_weight=100),
        ]
        for seed in range(5):
            assert _uids(run(entries, seed=seed)) == [2]


class TestMinActivations:
    def test_widens_scan_window(self, run) -> None:
        texts = ["I saw a dragon.", "Then we ate.", "And slept."]
        entries = [_entry(1, "x", ["dragon"])]
        assert run(entries, texts, scan_depth=1).is_empty
        assert _uids(run(entries, texts, scan_depth=1, min_activations=1)) == [1]

    def test_depth_max_bounds_widening(self, run) -> None:
        texts = ["I saw a dragon.", "Then we ate.", "And slept."]
        entries = [_entry(1, "x", ["dragon"])]
        result = run(entries, texts, scan_depth=1, min_activations=1, min_activations_depth_max=2)
        assert result.is_empty


class TestPlacement:
    def test_positions(self, run) -> None:
        entries = [
            _entry(1, "before", ["dragon"], position=LorePosition.BEFORE),
            _entry(2, "after", ["dragon"], position=LorePosition.AFTER),
            _entry(3, "note top", ["dragon"], position=LorePosition.AN_BEFORE),
            _entry(4, "note bottom", ["dragon"], position=LorePosition.AN_AFTER),
            _entry(5, "example top", ["dragon"], position=LorePosition.EM_BEFORE),
            _entry(6, "deep", ["dragon"], position=LorePosition.AT_DEPTH, depth=2, role="user"),
            _entry(7, "outlet", ["dragon"], position=LorePosition.OUTLET, outlet_name="map"),
        ]
        result = run(entries)
        assert result.before == "before"
        assert result.after == "after"
        assert result.an_before == ["note top"]
        assert result.an_after == ["note bottom"]
        assert result.em_before == ["example top"]
        assert [(i.depth, i.role, i.content) for i in result.depth_entries[2]] == [(2, "user", "deep")]
        assert result.outlets == {"map": ["outlet"]}

    def test_content_goes_through_macros(self, run) -> None:
        result = run([_entry(1, "{{char}} fears dragons.", ["dragon"])])
        assert result.before == "Rin fears dragons."

    def test_triggered_by_book(self, run, rin) -> None:
        history = [user_message("dragon"), char_message(rin, "Indeed.")]
        result = run([_entry(1, "x", ["dragon"])], history=history)
        assert list(result.triggered) == ["world"]
