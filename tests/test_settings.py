from dorc.settings import _env_bool, _env_float, _env_int


def test_env_numbers_fall_back_on_invalid_values(monkeypatch):
    monkeypatch.setenv("DORC_TEST_INT", "12")
    monkeypatch.setenv("DORC_TEST_FLOAT", "0.25")
    assert _env_int("DORC_TEST_INT", 5) == 12
    assert _env_float("DORC_TEST_FLOAT", 1.0) == 0.25

    monkeypatch.setenv("DORC_TEST_INT", "twelve")
    monkeypatch.setenv("DORC_TEST_FLOAT", "fast")
    assert _env_int("DORC_TEST_INT", 5) == 5
    assert _env_float("DORC_TEST_FLOAT", 1.0) == 1.0


def test_env_unset_uses_default(monkeypatch):
    monkeypatch.delenv("DORC_TEST_INT", raising=False)
    monkeypatch.delenv("DORC_TEST_BOOL", raising=False)
    assert _env_int("DORC_TEST_INT", 7) == 7
    assert _env_bool("DORC_TEST_BOOL", True) is True


def test_env_bool_values(monkeypatch):
    for raw, expected in [("1", True), ("Yes", True), ("on", True), ("0", False), ("nope", False)]:
        monkeypatch.setenv("DORC_TEST_BOOL", raw)
        assert _env_bool("DORC_TEST_BOOL") is expected
