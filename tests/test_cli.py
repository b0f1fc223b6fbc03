from pathlib import Path

from vent_bridge.cli import build_parser, main


def test_show_config_prints_resolved_sections(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "vent-bridge.cfg"
    config_path.write_text("[broker]\nendpoint = broker.test:8883\n", encoding="utf-8")

    exit_code = main(["--config", str(config_path), "show-config"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert f"Configuration loaded from {config_path}" in output
    assert "[broker]" in output
    assert "endpoint = broker.test" in output
    assert "[relay]" in output


def test_send_accepts_vent_values() -> None:
    args = build_parser().parse_args(["send", "off", "--url", "http://bridge:8080"])

    assert args.command == "send"
    assert args.vent == "off"
    assert args.url == "http://bridge:8080"
