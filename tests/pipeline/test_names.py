"""Tests for tavern_gen.pipeline.names — name-leak trimming."""

from tavern_gen.pipeline.names import NameLeakDetector, leaked_name, trim_name_leak

NAMES = {"Alex", "Kai"}


def test_leaked_name():
    assert leaked_name("Alex: hi", NAMES) == "Alex"
    assert leaked_name("  Kai: hi", NAMES) == "Kai"
    assert leaked_name("Alexander: hi", NAMES) is None
    assert leaked_name("Note: Alex is here", NAMES) is None


def test_trim_at_leaking_line():
    text = "Rin nods.\nShe smiles.\nAlex: Thanks!\nRin: More."
    assert trim_name_leak(text, NAMES) == "Rin nods.\nShe smiles."


def test_trim_leak_on_first_line():
    assert trim_name_leak("Kai: I'll answer.", NAMES) == ""


def test_no_leak():
    text = "Rin says: hello\nAnd Alex laughs."
    assert trim_name_leak(text, NAMES) == text


class TestNameLeakDetector:
    def test_incremental(self):
        detector = NameLeakDetector(NAMES)
        text = ""
        for piece in ["Rin draws", " her blade.\nAl", "ex", ":", " Wait!"]:
            text += piece
            trimmed = detector.check(text)
            if trimmed is not None:
                break
        assert piece == " Wait!"
        assert trimmed == "Rin draws her blade."

    def test_no_leak(self):
        detector = NameLeakDetector(NAMES)
        assert detector.check("Line one.\nLine two: done") is None
        assert detector.check("Line one.\nLine two: done\nmore") is None

    def test_blank_names_ignored(self):
        detector = NameLeakDetector({"", "  "})
        assert detector.names == set()
        assert detector.check(": odd") is None

    def test_undecided_while_first_line_could_be_a_name(self):
        detector = NameLeakDetector(NAMES)
        assert detector.undecided("Al")
        assert detector.undecided("  Kai")
        assert detector.undecided("Alex:")
        assert not detector.undecided("Alright")
        assert not detector.undecided("Alex: hi")
        assert not detector.undecided("Al\nmore")
