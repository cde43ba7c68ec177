import pytest

from tapproxy import certs
from tapproxy import options
from tapproxy.tools import cmdline
from tapproxy.tools import main


def test_load_options(tmp_path):
    (tmp_path / "config.yaml").write_text("listen_port: 9001\nthrottle: 50\n")
    opts = options.Options()
    parser = cmdline.tapproxy(opts)
    args, verbosity = main.load_options(
        parser, opts, ["--confdir", str(tmp_path), "--set", "silent", "--throttle", "10"]
    )
    assert verbosity == "info"
    assert opts.confdir == str(tmp_path)
    assert opts.listen_port == 9001
    assert opts.throttle == 10
    assert opts.silent


def test_load_options_invalid(tmp_path, capsys):
    opts = options.Options()
    parser = cmdline.tapproxy(opts)
    with pytest.raises(SystemExit) as exc:
        main.load_options(parser, opts, ["--confdir", str(tmp_path), "--throttle", "0"])
    assert exc.value.code == 1
    assert "throttle" in capsys.readouterr().err


def test_dump_options(tmp_path, capsys):
    opts = options.Options()
    parser = cmdline.tapproxy(opts)
    with pytest.raises(SystemExit) as exc:
        main.load_options(parser, opts, ["--confdir", str(tmp_path), "--options"])
    assert exc.value.code == 0
    assert "listen_port: 8001" in capsys.readouterr().out


def test_tapproxy_ca(tmp_path, capsys):
    assert main.tapproxy_ca(["--confdir", str(tmp_path)]) == 0
    assert "No root CA" in capsys.readouterr().out

    assert main.tapproxy_ca(["--confdir", str(tmp_path), "--generate"]) == 0
    out = capsys.readouterr().out
    assert str(certs.ca_cert_path(tmp_path, options.CONF_BASENAME)) in out
    assert certs.ca_exists(tmp_path, options.CONF_BASENAME)

    assert main.tapproxy_ca(["--confdir", str(tmp_path), "--generate"]) == 1
    assert "already exists" in capsys.readouterr().err

    assert main.tapproxy_ca(["--confdir", str(tmp_path), "--generate", "--force"]) == 0
