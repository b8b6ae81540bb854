import pytest

from rv32_pipeline_sim import Asm, main, read_hex_file


def write_hex(path, words, comment=None):
    lines = []
    if comment:
        lines.append(f"# {comment}")
    lines += [f"{w:08x}" for w in words]
    path.write_text("\n".join(lines) + "\n")
    return str(path)


def test_demo_run_passes_self_checks(capsys):
    assert main([]) == 0
    out = capsys.readouterr().out
    assert "All checks passed" in out
    assert "Total cycles:         25" in out


def test_read_hex_file_skips_comments(tmp_path):
    path = tmp_path / "prog.hex"
    path.write_text("# header\n00500093  # addi x1, x0, 5\n\n00100073\n")
    assert read_hex_file(str(path)) == [0x00500093, 0x00100073]


def test_program_and_data_files(tmp_path, capsys):
    prog = write_hex(tmp_path / "prog.hex",
                     [Asm.lw(1, 0, 0), Asm.mul(2, 1, 1), Asm.ebreak()],
                     comment="square mem[0]")
    data = write_hex(tmp_path / "data.hex", [6])
    assert main(["--file", prog, "--data", data, "--mul-latency", "3"]) == 0
    out = capsys.readouterr().out
    assert "x2 =0x00000024" in out
    assert "compute 3" in out


def test_fault_exit_code(tmp_path, capsys):
    prog = write_hex(tmp_path / "bad.hex", [0xFFFFFFFF])
    assert main(["--file", prog]) == 2
    assert "InvalidOpcode" in capsys.readouterr().out


def test_cycle_limit_exit_code(tmp_path):
    prog = write_hex(tmp_path / "spin.hex", [Asm.beq(0, 0, 0)])
    assert main(["--file", prog, "--cycles", "5"]) == 1


def test_rejects_non_hex_program_line(tmp_path, capsys):
    path = tmp_path / "typo.hex"
    path.write_text("00500093\naddi x1, x0, 5\n")
    with pytest.raises(SystemExit) as exc:
        main(["--file", str(path)])
    assert exc.value.code == 2
    assert "bad hex word" in capsys.readouterr().err


def test_rejects_data_larger_than_memory(tmp_path, capsys):
    data = write_hex(tmp_path / "big.hex", [1, 2, 3])
    with pytest.raises(SystemExit):
        main(["--data", data, "--mem-words", "2"])
    assert "does not fit" in capsys.readouterr().err


def test_rejects_negative_latency():
    with pytest.raises(SystemExit):
        main(["--mul-latency", "-1"])
