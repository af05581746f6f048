from obe.settings import DEFAULT_SETTINGS_PATH, load_settings


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("OBE_DATABASE_URL", raising=False)
    settings = load_settings(tmp_path / "absent.yaml")
    assert settings.db.url == "sqlite:///./obe.db"
    assert settings.thresholds.allow_touching_boundaries is True
    assert settings.attainment.direct_weight == 0.8
    assert settings.attainment.unclassified_label == "Unclassified"


def test_partial_file_keeps_other_sections(tmp_path, monkeypatch):
    monkeypatch.delenv("OBE_DATABASE_URL", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text("thresholds:\n  allow_touching_boundaries: false\n  contiguity_step: 0\nauth:\n  admin_role: REGISTRAR\n")
    settings = load_settings(path)
    assert settings.thresholds.allow_touching_boundaries is False
    assert settings.thresholds.contiguity_step == 0
    assert settings.auth.admin_role == "REGISTRAR"
    assert settings.attainment.indirect_weight == 0.2


def test_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "alt.yaml"
    path.write_text("app:\n  environment: staging\n")
    monkeypatch.setenv("OBE_SETTINGS", str(path))
    monkeypatch.setenv("OBE_DATABASE_URL", "postgresql://obe@localhost/obe")
    settings = load_settings()
    assert settings.app.environment == "staging"
    assert settings.db.url == "postgresql://obe@localhost/obe"


def test_shipped_settings_file_loads(monkeypatch):
    monkeypatch.delenv("OBE_DATABASE_URL", raising=False)
    settings = load_settings(DEFAULT_SETTINGS_PATH)
    assert settings.auth.admin_role == "ADMIN"
    assert settings.db.timeout_seconds == 5
    assert settings.attainment.default_mapping_level == 2
