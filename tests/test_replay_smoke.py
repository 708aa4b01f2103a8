from replay_smoke import main


def test_smoke_run_completes(capsys):
    assert main(["--bars", "80", "--seed", "7"]) == 0
    out = capsys.readouterr().out
    assert "Final state: complete" in out
    assert "decision_submitted" in out
