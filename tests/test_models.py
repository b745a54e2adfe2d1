import pytest

from tcjudge.models import (RUNNING_VERDICTS, VERDICT_TABLE, FileIO, InlineIO,
                            Problem, FileWithHash, TestCase, Verdict,
                            io_from_dict, io_to_dict, read_io)


def test_every_verdict_has_display_data():
    assert set(VERDICT_TABLE) == set(Verdict)
    assert Verdict.AC.full_name == "Accepted"
    assert Verdict.TLE.color.startswith("#")


@pytest.mark.parametrize("verdict,expand", [
    (Verdict.AC, False),
    (Verdict.SK, False),
    (Verdict.RJ, False),
    (Verdict.JG, False),
    (Verdict.WA, True),
    (Verdict.CE, True),
    (Verdict.PC, True),
])
def test_is_expand(verdict, expand):
    assert verdict.is_expand == expand


def test_running_verdicts():
    assert Verdict.CMP.is_running
    assert not Verdict.SK.is_running
    assert len(RUNNING_VERDICTS) == 6


def test_io_dict_forms():
    assert io_to_dict(InlineIO("x")) == {"inline": "x"}
    assert io_to_dict(FileIO("/a")) == {"file": "/a"}
    assert io_from_dict({"file": "/a"}) == FileIO("/a")
    with pytest.raises(ValueError):
        io_from_dict({"inline": "x", "file": "/a"})
    with pytest.raises(ValueError):
        io_from_dict({})
    with pytest.raises(TypeError):
        io_to_dict("x")


def test_read_io(tmp_path):
    path = tmp_path / "data.txt"
    path.write_text("from file")
    assert read_io(FileIO(str(path))) == "from file"
    assert read_io(InlineIO("inline")) == "inline"


def test_test_case_order():
    problem = Problem("p", FileWithHash("/tmp/p.py"))
    first = problem.add_test_case(TestCase(stdin=InlineIO("1")))
    second = problem.add_test_case(TestCase(stdin=InlineIO("2")))
    assert problem.test_case_order == [first, second]
    assert [tc.stdin for tc in problem.ordered()] == [InlineIO("1"),
                                                      InlineIO("2")]
    assert problem.id_at(1) == second
    assert problem.id_at(2) is None
    assert problem.id_at(-1) is None
