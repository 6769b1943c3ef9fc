from testsmith.runner.cli import _slugify


def test_slugify():
    assert _slugify("Users can log in and see the dashboard") == "users-can-log-in-and-see-the-dashboard"
    assert _slugify("  Weird__Chars!!  ") == "weird-chars"
    assert _slugify("!!!") == "run"
    assert len(_slugify("word " * 40)) <= 60
