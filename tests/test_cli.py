import json
from pathlib import Path

import pytest

import cart_cli


def _run(capsys, *argv):
    code = cart_cli.main(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


def _keygen(capsys, tmp_path: Path, name: str, alg: str) -> Path:
    path = tmp_path / name
    code, _, _ = _run(capsys, "keygen", "--alg", alg, "--out", str(path))
    assert code == 0
    return path


@pytest.fixture()
def payload_file(tmp_path: Path) -> Path:
    p = tmp_path / "payload.json"
    p.write_text(json.dumps({"userId": "alice", "items": ["book"], "total": 20}), encoding="utf-8")
    return p


def test_no_command_prints_help(capsys):
    code, out, _ = _run(capsys)
    assert code == 1
    assert "keygen" in out


def test_keygen_writes_key_file(capsys, tmp_path):
    path = _keygen(capsys, tmp_path, "sig.json", "EdDSA")
    key = json.loads(path.read_text(encoding="utf-8"))
    assert set(key) == {"kid", "alg", "publicKey", "privateKey"}
    assert key["alg"] == "EdDSA"
    assert key["publicKey"]["kty"] == "OKP"


def test_sign_and_verify(capsys, tmp_path, payload_file):
    key = _keygen(capsys, tmp_path, "sig.json", "ES256")
    signed = tmp_path / "signed.json"
    code, _, _ = _run(capsys, "sign", str(payload_file), "--key", str(key), "--out", str(signed))
    assert code == 0

    code, out, err = _run(capsys, "verify", str(signed), "--key", str(key))
    assert code == 0
    assert json.loads(out)["userId"] == "alice"
    assert "Signature valid" in err


def test_verify_with_public_only_key_file(capsys, tmp_path, payload_file):
    key = _keygen(capsys, tmp_path, "sig.json", "PS256")
    data = json.loads(key.read_text(encoding="utf-8"))
    public = tmp_path / "public.json"
    public.write_text(json.dumps({"kid": data["kid"], "alg": data["alg"], "publicKey": data["publicKey"]}), encoding="utf-8")

    signed = tmp_path / "signed.json"
    _run(capsys, "sign", str(payload_file), "--key", str(key), "--out", str(signed))
    code, out, _ = _run(capsys, "verify", str(signed), "--key", str(public))
    assert code == 0
    assert json.loads(out)["total"] == 20


def test_verify_detects_tampering(capsys, tmp_path, payload_file):
    key = _keygen(capsys, tmp_path, "sig.json", "EdDSA")
    signed = tmp_path / "signed.json"
    _run(capsys, "sign", str(payload_file), "--key", str(key), "--out", str(signed))
    doc = json.loads(signed.read_text(encoding="utf-8"))
    doc["payload"]["total"] = 0
    signed.write_text(json.dumps(doc), encoding="utf-8")

    code, _, err = _run(capsys, "verify", str(signed), "--key", str(key))
    assert code == 1
    assert "bad_signature" in err


def test_encrypt_and_decrypt(capsys, tmp_path, payload_file):
    key = _keygen(capsys, tmp_path, "enc.json", "RSA-OAEP-256")
    token = tmp_path / "token.txt"
    code, _, _ = _run(capsys, "encrypt", str(payload_file), "--key", str(key), "--aud", "svc",
                      "--exp", "10m", "--out", str(token))
    assert code == 0
    assert token.read_text(encoding="utf-8").strip().count(".") == 4

    code, out, _ = _run(capsys, "decrypt", str(token), "--key", str(key), "--aud", "svc")
    assert code == 0
    claims = json.loads(out)
    assert claims["userId"] == "alice"
    assert claims["exp"] - claims["iat"] == 600

    code, _, err = _run(capsys, "decrypt", str(token), "--key", str(key), "--aud", "other")
    assert code == 1
    assert "CART_E_DECRYPTION_FAILED" in err


def test_seal_and_open(capsys, tmp_path, payload_file):
    enc = _keygen(capsys, tmp_path, "enc.json", "RSA-OAEP-256")
    sig = _keygen(capsys, tmp_path, "sig.json", "PS256")
    sealed = tmp_path / "sealed.json"
    code, _, _ = _run(capsys, "seal", str(payload_file), "--enc-key", str(enc), "--sig-key", str(sig),
                      "--compress", "gzip", "--out", str(sealed))
    assert code == 0
    assert json.loads(sealed.read_text(encoding="utf-8"))["payload"]["version"] == 1

    code, out, _ = _run(capsys, "open", str(sealed), "--enc-key", str(enc), "--sig-key", str(sig))
    assert code == 0
    assert json.loads(out) == {"userId": "alice", "items": ["book"], "total": 20}


def test_errors_are_reported_without_traceback(capsys, tmp_path, payload_file):
    code, _, err = _run(capsys, "sign", str(payload_file), "--key", str(tmp_path / "missing.json"))
    assert code == 1
    assert err.startswith("ERROR: CART_E_CONFIG")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    code, _, err = _run(capsys, "sign", str(bad), "--key", str(bad))
    assert code == 1
    assert "Invalid JSON" in err


def test_key_file_public_key_must_be_an_object(capsys, tmp_path, payload_file):
    for public_key in ("x", ["kty", "RSA"], 42):
        key = tmp_path / "key.json"
        key.write_text(json.dumps({"kid": "k", "publicKey": public_key}), encoding="utf-8")
        code, _, err = _run(capsys, "sign", str(payload_file), "--key", str(key))
        assert code == 1
        assert err.startswith("ERROR: CART_E_CONFIG")
        assert "must contain kid and publicKey" in err


def test_compression_info(capsys):
    code, out, _ = _run(capsys, "compression")
    assert code == 0
    info = json.loads(out)
    assert info["runtime_kind"] in ("native", "embedded")
    assert "gzip" in info["methods"]
