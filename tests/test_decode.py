import pytest

from rv32_pipeline_sim import (
    ALU, Asm, ControlSignals, DecodedInstruction, InvalidOpcode,
    MalformedImmediate, Multiplier, Opcode, demo_program,
)


def decode(word):
    inst = DecodedInstruction(word)
    return inst, ControlSignals.decode(inst)


def test_known_encodings():
    assert Asm.addi(1, 0, 5) == 0x00500093
    assert Asm.add(2, 2, 1) == 0x00110133
    assert Asm.addi(1, 1, -1) == 0xFFF08093
    assert Asm.beq(1, 0, 16) == 0x00008863
    assert Asm.beq(0, 0, -12) == 0xFE000AE3
    assert Asm.sw(2, 0, 0) == 0x00202023


def test_demo_program_matches_encoder():
    assert demo_program() == [
        Asm.addi(1, 0, 5),
        Asm.addi(2, 0, 0),
        Asm.beq(1, 0, 16),
        Asm.add(2, 2, 1),
        Asm.addi(1, 1, -1),
        Asm.beq(0, 0, -12),
        Asm.sw(2, 0, 0),
        Asm.ebreak(),
    ]


def test_immediate_fields_are_sign_extended():
    assert DecodedInstruction(Asm.addi(1, 2, -5)).imm_i == -5
    assert DecodedInstruction(Asm.sw(5, -8, 2)).imm_s == -8
    assert DecodedInstruction(Asm.bne(1, 2, -4096)).imm_b == -4096
    assert DecodedInstruction(Asm.jal(1, -2048)).imm_j == -2048
    assert DecodedInstruction(Asm.jal(1, 0x7FFFE)).imm_j == 0x7FFFE
    assert DecodedInstruction(Asm.lui(1, 0x12345)).imm_u == 0x12345000
    assert DecodedInstruction(Asm.lui(1, 0xFFFFF)).imm_u == -4096


def test_register_fields():
    inst = DecodedInstruction(Asm.sub(7, 8, 9))
    assert (inst.rd, inst.rs1, inst.rs2) == (7, 8, 9)
    assert inst.opcode == Opcode.OP
    assert inst.funct7 == 0x20


def test_decoded_instruction_is_immutable():
    inst = DecodedInstruction(Asm.addi(1, 0, 1))
    with pytest.raises(AttributeError):
        inst.rd = 3


def test_alu_register_controls():
    _, c = decode(Asm.sra(3, 1, 2))
    assert c.is_alu and c.reg_write and c.uses_rs1 and c.uses_rs2
    assert c.alu_op == ALU.SRA and c.alu_src == 0
    assert c.mnemonic == "sra"


def test_alu_immediate_controls():
    _, c = decode(Asm.sltiu(3, 1, 7))
    assert c.is_alu and c.alu_src == 1 and c.imm == 7
    assert c.uses_rs1 and not c.uses_rs2
    assert c.mnemonic == "sltiu"

    _, c = decode(Asm.srai(3, 1, 4))
    assert c.alu_op == ALU.SRA and c.imm == 4


def test_multiply_controls():
    _, c = decode(Asm.mulhu(3, 1, 2))
    assert c.is_mult and not c.is_alu
    assert c.alu_op == Multiplier.MULHU


def test_memory_and_control_flow_controls():
    _, lw = decode(Asm.lw(1, 8, 2))
    assert lw.is_load and lw.reg_write and lw.uses_rs1 and not lw.uses_rs2
    _, sw = decode(Asm.sw(1, 8, 2))
    assert sw.is_store and not sw.reg_write and sw.uses_rs2
    _, bne = decode(Asm.bne(1, 2, 8))
    assert bne.is_branch and not bne.branch_on_equal and not bne.reg_write
    _, jal = decode(Asm.jal(1, 8))
    assert jal.is_jal and jal.reg_write and not jal.uses_rs1
    _, jalr = decode(Asm.jalr(1, 5, 0))
    assert jalr.is_jalr and jalr.uses_rs1


def test_halt_encodings():
    assert decode(Asm.ebreak())[1].halt
    assert decode(Asm.ecall())[1].halt


def test_destination_x0_never_writes():
    _, c = decode(Asm.addi(0, 1, 5))
    assert not c.reg_write
    _, c = decode(Asm.jal(0, 8))
    assert not c.reg_write


@pytest.mark.parametrize("word", [
    0x00000000,                          # opcode 0
    0xFFFFFFFF,                          # opcode 0x7F
    Asm.r_type(0x10, 2, 1, 0, 3, Opcode.OP),
    Asm.r_type(0x01, 2, 1, 4, 3, Opcode.OP),   # DIV is not implemented
    Asm.i_type(0, 1, 0, 2, Opcode.LOAD),       # LB
    Asm.s_type(0, 2, 1, 1, Opcode.STORE),      # SH
    Asm.b_type(8, 2, 1, 4),                    # BLT
    Asm.i_type(0, 1, 1, 2, Opcode.JALR),
    0x30200073,                                # MRET
])
def test_unrecognized_instructions(word):
    with pytest.raises(InvalidOpcode):
        decode(word)


@pytest.mark.parametrize("word", [
    Asm.r_type(0x01, 3, 1, 1, 2, Opcode.OP_IMM),   # slli with bit 25 set
    Asm.r_type(0x10, 3, 1, 5, 2, Opcode.OP_IMM),   # bad srli/srai selector
    Asm.b_type(2, 0, 0, 0),                        # branch off word grid
    Asm.j_type(6, 1),                              # jump off word grid
])
def test_malformed_immediates(word):
    with pytest.raises(MalformedImmediate):
        decode(word)


def test_encoder_rejects_out_of_range_immediates():
    with pytest.raises(MalformedImmediate):
        Asm.addi(1, 0, 4096)
    with pytest.raises(MalformedImmediate):
        Asm.beq(0, 0, 3)
