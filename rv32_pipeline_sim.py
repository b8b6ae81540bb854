"""
RV32 3-Stage Pipeline Simulator
============================================================
A cycle-stepped, pure-Python model of an in-order, single-issue RV32IM
pipeline with three stages:

  Stage 1: fetch, decode, operand read, forwarding, early branch resolution
  Stage 2: execute (ALU, multiplier, address generation)
  Stage 3: data memory access + register write-back

Every call to PipelineCPU.step() advances exactly one clock cycle.

Run:
    python3 rv32_pipeline_sim.py                     # runs built-in demo program
    python3 rv32_pipeline_sim.py --file program.hex  # loads hex instructions
"""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, NamedTuple, Optional, Tuple

# ─────────────────────────────────────────────────────────────────────────────
# Utility helpers
# ─────────────────────────────────────────────────────────────────────────────

def sign_extend(value: int, bits: int) -> int:
    """Sign-extend a *bits*-wide integer to a full Python int."""
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        return value - (1 << bits)
    return value

def to_unsigned_32(value: int) -> int:
    """Clamp to unsigned 32-bit."""
    return value & 0xFFFFFFFF

def to_signed_32(value: int) -> int:
    """Interpret an unsigned 32-bit value as signed."""
    v = value & 0xFFFFFFFF
    if v & 0x80000000:
        return v - 0x100000000
    return v

# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class PipelineError(Exception):
    """Base class for conditions that stop the model (never the hardware)."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidOpcode(PipelineError):
    """Unrecognized opcode / function-selector combination."""


class MalformedImmediate(PipelineError):
    """Immediate field that cannot be encoded by a legal instruction."""


class AddressOutOfRange(PipelineError):
    """Access outside the configured instruction or data memory."""


class RegisterOutOfRange(AddressOutOfRange):
    pass


class MisalignedAddress(PipelineError):
    """Word access or fetch at an address that is not 4-byte aligned."""

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

class PipelineConfig:
    """
    Tunable parameters of the model. Instruction width and register count
    are fixed by the ISA and only exposed as constants.
    """

    INSTRUCTION_WIDTH = 4
    NUM_REGISTERS = 32
    DEFAULT_MUL_LATENCY = 2
    DEFAULT_MEMORY_WORDS = 1024

    __slots__ = ("mul_latency", "memory_words")

    def __init__(self, mul_latency: int = DEFAULT_MUL_LATENCY,
                 memory_words: int = DEFAULT_MEMORY_WORDS):
        if mul_latency < 0:
            raise ValueError(f"mul_latency must be >= 0, got {mul_latency}")
        if memory_words <= 0:
            raise ValueError(f"memory_words must be > 0, got {memory_words}")
        self.mul_latency = mul_latency
        self.memory_words = memory_words

    def __repr__(self):
        return (f"PipelineConfig(mul_latency={self.mul_latency}, "
                f"memory_words={self.memory_words})")

# ─────────────────────────────────────────────────────────────────────────────
# Architectural state
# ─────────────────────────────────────────────────────────────────────────────

class RegisterFile:
    """32 x 32-bit registers; x0 reads as zero and ignores writes."""

    def __init__(self, count: int = PipelineConfig.NUM_REGISTERS):
        self.regs: List[int] = [0] * count

    def _check(self, index: int):
        if not 0 <= index < len(self.regs):
            raise RegisterOutOfRange(f"register x{index} does not exist")

    def read(self, index: int) -> int:
        self._check(index)
        return self.regs[index]

    def write(self, index: int, value: int):
        self._check(index)
        if index == 0:
            return  # x0 is hardwired to 0
        self.regs[index] = to_unsigned_32(value)

    def __getitem__(self, index: int) -> int:
        return self.read(index)

    def __len__(self):
        return len(self.regs)


class DataMemory:
    """Flat word array addressed by (word-aligned) byte address."""

    def __init__(self, words: int = PipelineConfig.DEFAULT_MEMORY_WORDS):
        self.words: List[int] = [0] * words

    def _index(self, address: int) -> int:
        if address & 0x3:
            raise MisalignedAddress(f"data address {address:#010x} is not word aligned")
        index = address >> 2
        if not 0 <= index < len(self.words):
            raise AddressOutOfRange(
                f"data address {address:#010x} outside {len(self.words) * 4} bytes")
        return index

    def read_word(self, address: int) -> int:
        return self.words[self._index(address)]

    def write_word(self, address: int, value: int):
        self.words[self._index(address)] = to_unsigned_32(value)

    def __len__(self):
        return len(self.words)


class InstructionMemory:
    """Read-only view of the loaded program, byte addresses from 0."""

    def __init__(self, words: Optional[List[int]] = None):
        self.words: List[int] = [to_unsigned_32(w) for w in (words or [])]

    @property
    def end_address(self) -> int:
        """First byte address past the last loaded instruction."""
        return len(self.words) * PipelineConfig.INSTRUCTION_WIDTH

    def read_instruction(self, address: int) -> int:
        if address & 0x3:
            raise MisalignedAddress(f"fetch address {address:#010x} is not word aligned")
        index = address >> 2
        if not 0 <= index < len(self.words):
            raise AddressOutOfRange(f"fetch address {address:#010x} outside program")
        return self.words[index]

    def __len__(self):
        return len(self.words)


class ArchitecturalState:
    """Register file, PC, data memory and cycle counter of one machine."""

    def __init__(self, config: PipelineConfig):
        self.regs = RegisterFile(PipelineConfig.NUM_REGISTERS)
        self.memory = DataMemory(config.memory_words)
        self.pc = 0
        self.cycle = 0

    def snapshot(self) -> Tuple[Tuple[int, ...], Tuple[int, ...], int, int]:
        """Immutable copy of (registers, memory, pc, cycle) for comparisons."""
        return (tuple(self.regs.regs), tuple(self.memory.words),
                self.pc, self.cycle)

# ─────────────────────────────────────────────────────────────────────────────
# Execute: ALU and multiplier
# ─────────────────────────────────────────────────────────────────────────────

class ALU:
    """
    32-bit RV32I ALU. Single-cycle: results are visible to the decode stage
    in the same cycle they are computed.
    """

    ADD  = 0x0
    SUB  = 0x1
    SLL  = 0x2
    SLT  = 0x3
    SLTU = 0x4
    XOR  = 0x5
    SRL  = 0x6
    SRA  = 0x7
    OR   = 0x8
    AND  = 0x9

    NAMES = {ADD: "add", SUB: "sub", SLL: "sll", SLT: "slt", SLTU: "sltu",
             XOR: "xor", SRL: "srl", SRA: "sra", OR: "or", AND: "and"}

    @staticmethod
    def execute(a: int, b: int, op: int) -> int:
        a, b = to_unsigned_32(a), to_unsigned_32(b)
        shamt = b & 0x1F
        if op == ALU.ADD:
            result = a + b
        elif op == ALU.SUB:
            result = a - b
        elif op == ALU.SLL:
            result = a << shamt
        elif op == ALU.SLT:
            result = 1 if to_signed_32(a) < to_signed_32(b) else 0
        elif op == ALU.SLTU:
            result = 1 if a < b else 0
        elif op == ALU.XOR:
            result = a ^ b
        elif op == ALU.SRL:
            result = a >> shamt
        elif op == ALU.SRA:
            result = to_signed_32(a) >> shamt
        elif op == ALU.OR:
            result = a | b
        elif op == ALU.AND:
            result = a & b
        else:
            raise InvalidOpcode(f"unknown ALU operation {op}")
        return to_unsigned_32(result)


class Multiplier:
    """RV32M multiply unit. Its latency is configuration, not a constant."""

    MUL    = 0x0
    MULH   = 0x1
    MULHSU = 0x2
    MULHU  = 0x3

    NAMES = {MUL: "mul", MULH: "mulh", MULHSU: "mulhsu", MULHU: "mulhu"}

    @staticmethod
    def execute(a: int, b: int, op: int) -> int:
        if op == Multiplier.MUL:
            return to_unsigned_32(a * b)
        if op == Multiplier.MULH:
            return to_unsigned_32((to_signed_32(a) * to_signed_32(b)) >> 32)
        if op == Multiplier.MULHSU:
            return to_unsigned_32((to_signed_32(a) * to_unsigned_32(b)) >> 32)
        if op == Multiplier.MULHU:
            return to_unsigned_32((to_unsigned_32(a) * to_unsigned_32(b)) >> 32)
        raise InvalidOpcode(f"unknown multiply operation {op}")

# ─────────────────────────────────────────────────────────────────────────────
# Instruction decoder
# ─────────────────────────────────────────────────────────────────────────────

class Opcode:
    LOAD   = 0x03
    OP_IMM = 0x13
    AUIPC  = 0x17
    STORE  = 0x23
    OP     = 0x33
    LUI    = 0x37
    BRANCH = 0x63
    JALR   = 0x67
    JAL    = 0x6F
    SYSTEM = 0x73


class DecodedInstruction:
    """Decoded RV32 instruction fields. Immediates are pre-sign-extended."""

    __slots__ = ("raw", "opcode", "rd", "funct3", "rs1", "rs2", "funct7",
                 "imm_i", "imm_s", "imm_b", "imm_u", "imm_j")

    def __init__(self, raw: int):
        raw = to_unsigned_32(raw)
        set_ = object.__setattr__
        set_(self, "raw", raw)
        set_(self, "opcode", raw & 0x7F)
        set_(self, "rd", (raw >> 7) & 0x1F)
        set_(self, "funct3", (raw >> 12) & 0x7)
        set_(self, "rs1", (raw >> 15) & 0x1F)
        set_(self, "rs2", (raw >> 20) & 0x1F)
        set_(self, "funct7", (raw >> 25) & 0x7F)
        set_(self, "imm_i", sign_extend(raw >> 20, 12))
        set_(self, "imm_s", sign_extend(((raw >> 25) << 5) | ((raw >> 7) & 0x1F), 12))
        set_(self, "imm_b", sign_extend(
            (((raw >> 31) & 0x1) << 12) | (((raw >> 7) & 0x1) << 11) |
            (((raw >> 25) & 0x3F) << 5) | (((raw >> 8) & 0xF) << 1), 13))
        set_(self, "imm_u", to_signed_32(raw & 0xFFFFF000))
        set_(self, "imm_j", sign_extend(
            (((raw >> 31) & 0x1) << 20) | (((raw >> 12) & 0xFF) << 12) |
            (((raw >> 20) & 0x1) << 11) | (((raw >> 21) & 0x3FF) << 1), 21))

    def __setattr__(self, name, value):
        raise AttributeError("DecodedInstruction is immutable")

    def __repr__(self):
        return (f"Instr({self.raw:#010x} op={self.opcode:#04x} rd={self.rd} "
                f"rs1={self.rs1} rs2={self.rs2} f3={self.funct3} "
                f"f7={self.funct7:#04x})")


class ControlSignals:
    """Control signals produced by the decode table for one instruction."""

    __slots__ = ("is_alu", "is_mult", "is_load", "is_store", "is_branch",
                 "is_jal", "is_jalr", "is_lui", "is_auipc", "halt",
                 "reg_write", "alu_op", "alu_src", "imm", "branch_on_equal",
                 "uses_rs1", "uses_rs2", "mnemonic")

    def __init__(self):
        self.is_alu = False
        self.is_mult = False
        self.is_load = False
        self.is_store = False
        self.is_branch = False
        self.is_jal = False
        self.is_jalr = False
        self.is_lui = False
        self.is_auipc = False
        self.halt = False
        self.reg_write = False
        self.alu_op = ALU.ADD
        self.alu_src = 0   # 0=rs2, 1=immediate
        self.imm = 0
        self.branch_on_equal = True
        self.uses_rs1 = False
        self.uses_rs2 = False
        self.mnemonic = "?"

    @staticmethod
    def decode(inst: DecodedInstruction) -> "ControlSignals":
        """Map an instruction word to its control signals or raise."""
        c = ControlSignals()
        op, f3, f7 = inst.opcode, inst.funct3, inst.funct7

        if op == Opcode.OP:
            c.uses_rs1 = c.uses_rs2 = True
            c.reg_write = True
            if f7 == 0x01:
                c.is_mult = True
                if f3 > Multiplier.MULHU:
                    raise InvalidOpcode(f"unsupported M-extension funct3 {f3}")
                c.alu_op = f3
                c.mnemonic = Multiplier.NAMES[f3]
            else:
                reg_map = {
                    (0x00, 0): ALU.ADD, (0x20, 0): ALU.SUB, (0x00, 1): ALU.SLL,
                    (0x00, 2): ALU.SLT, (0x00, 3): ALU.SLTU, (0x00, 4): ALU.XOR,
                    (0x00, 5): ALU.SRL, (0x20, 5): ALU.SRA, (0x00, 6): ALU.OR,
                    (0x00, 7): ALU.AND,
                }
                if (f7, f3) not in reg_map:
                    raise InvalidOpcode(f"unknown OP funct7={f7:#04x} funct3={f3}")
                c.is_alu = True
                c.alu_op = reg_map[(f7, f3)]
                c.mnemonic = ALU.NAMES[c.alu_op]
        elif op == Opcode.OP_IMM:
            imm_map = {0: ALU.ADD, 2: ALU.SLT, 3: ALU.SLTU, 4: ALU.XOR,
                       6: ALU.OR, 7: ALU.AND}
            imm_names = {0: "addi", 1: "slli", 2: "slti", 3: "sltiu",
                         4: "xori", 6: "ori", 7: "andi"}
            c.is_alu = True
            c.uses_rs1 = True
            c.reg_write = True
            c.alu_src = 1
            c.imm = inst.imm_i
            if f3 in imm_map:
                c.alu_op = imm_map[f3]
            elif f3 == 1:
                if f7 != 0x00:
                    raise MalformedImmediate(f"slli with shift field {inst.imm_i:#x}")
                c.alu_op = ALU.SLL
                c.imm = inst.rs2
            else:  # f3 == 5
                if f7 not in (0x00, 0x20):
                    raise MalformedImmediate(f"srli/srai with shift field {inst.imm_i:#x}")
                c.alu_op = ALU.SRA if f7 == 0x20 else ALU.SRL
                c.imm = inst.rs2
            if f3 == 5:
                c.mnemonic = "srai" if f7 == 0x20 else "srli"
            else:
                c.mnemonic = imm_names[f3]
        elif op == Opcode.LUI:
            c.is_lui = True; c.reg_write = True; c.imm = inst.imm_u
            c.mnemonic = "lui"
        elif op == Opcode.AUIPC:
            c.is_auipc = True; c.reg_write = True; c.imm = inst.imm_u
            c.mnemonic = "auipc"
        elif op == Opcode.LOAD:
            if f3 != 2:
                raise InvalidOpcode(f"only LW is supported (funct3={f3})")
            c.is_load = True; c.uses_rs1 = True; c.reg_write = True
            c.imm = inst.imm_i
            c.mnemonic = "lw"
        elif op == Opcode.STORE:
            if f3 != 2:
                raise InvalidOpcode(f"only SW is supported (funct3={f3})")
            c.is_store = True; c.uses_rs1 = c.uses_rs2 = True
            c.imm = inst.imm_s
            c.mnemonic = "sw"
        elif op == Opcode.BRANCH:
            if f3 not in (0, 1):
                raise InvalidOpcode(f"only BEQ/BNE are supported (funct3={f3})")
            if inst.imm_b & 0x3:
                raise MalformedImmediate(f"branch offset {inst.imm_b} not word aligned")
            c.is_branch = True; c.uses_rs1 = c.uses_rs2 = True
            c.branch_on_equal = f3 == 0
            c.imm = inst.imm_b
            c.mnemonic = "beq" if f3 == 0 else "bne"
        elif op == Opcode.JAL:
            if inst.imm_j & 0x3:
                raise MalformedImmediate(f"jump offset {inst.imm_j} not word aligned")
            c.is_jal = True; c.reg_write = True
            c.imm = inst.imm_j
            c.mnemonic = "jal"
        elif op == Opcode.JALR:
            if f3 != 0:
                raise InvalidOpcode(f"JALR with funct3={f3}")
            c.is_jalr = True; c.uses_rs1 = True; c.reg_write = True
            c.imm = inst.imm_i
            c.mnemonic = "jalr"
        elif op == Opcode.SYSTEM:
            if inst.raw not in (0x00000073, 0x00100073):
                raise InvalidOpcode(f"unsupported SYSTEM instruction {inst.raw:#010x}")
            c.halt = True
            c.mnemonic = "ecall" if inst.raw == 0x00000073 else "ebreak"
        else:
            raise InvalidOpcode(f"unknown opcode {op:#04x} in {inst.raw:#010x}")

        if inst.rd == 0:
            c.reg_write = False  # writes to x0 never leave decode
        return c

# ─────────────────────────────────────────────────────────────────────────────
# Pipeline latches
# ─────────────────────────────────────────────────────────────────────────────

class Stage1Latch:
    """Decode → Execute boundary. valid=False is a bubble."""

    __slots__ = ("valid", "inst", "ctrl", "rd", "rs1_val", "rs2_val",
                 "pc", "remaining")

    def __init__(self, inst: Optional[DecodedInstruction] = None,
                 ctrl: Optional[ControlSignals] = None,
                 rs1_val: int = 0, rs2_val: int = 0, pc: int = 0,
                 remaining: int = 0):
        self.valid = inst is not None
        self.inst = inst
        self.ctrl = ctrl or ControlSignals()
        self.rd = inst.rd if inst is not None else 0
        self.rs1_val = rs1_val
        self.rs2_val = rs2_val
        self.pc = pc
        self.remaining = remaining  # extra execute cycles still owed

    @classmethod
    def bubble(cls) -> "Stage1Latch":
        return cls()

    def held(self) -> "Stage1Latch":
        """The same instruction one execute cycle closer to its result."""
        return Stage1Latch(self.inst, self.ctrl, self.rs1_val, self.rs2_val,
                           pc=self.pc, remaining=self.remaining - 1)

    @property
    def imm(self) -> int:
        return self.ctrl.imm

    def describe(self) -> str:
        if not self.valid:
            return "bubble"
        return (f"pc={self.pc:#06x} {self.ctrl.mnemonic:<6} rd=x{self.rd:<2} "
                f"a={self.rs1_val:#010x} b={self.rs2_val:#010x}")


class Stage2Latch:
    """Execute → Memory/Write-back boundary. valid=False is a bubble."""

    __slots__ = ("valid", "inst", "ctrl", "rd", "result", "store_data",
                 "pc", "ready")

    def __init__(self, inst: Optional[DecodedInstruction] = None,
                 ctrl: Optional[ControlSignals] = None, result: int = 0,
                 store_data: int = 0, pc: int = 0, ready: bool = True):
        self.valid = inst is not None
        self.inst = inst
        self.ctrl = ctrl or ControlSignals()
        self.rd = inst.rd if inst is not None else 0
        self.result = result
        self.store_data = store_data
        self.pc = pc
        self.ready = ready  # False for a load until stage 3 has read memory

    @classmethod
    def bubble(cls) -> "Stage2Latch":
        return cls()

    def describe(self) -> str:
        if not self.valid:
            return "bubble"
        return (f"pc={self.pc:#06x} {self.ctrl.mnemonic:<6} rd=x{self.rd:<2} "
                f"result={self.result:#010x}")

# ─────────────────────────────────────────────────────────────────────────────
# Hazard detection and forwarding
# ─────────────────────────────────────────────────────────────────────────────

class StallKind:
    LOAD_USE = "load-use"
    COMPUTE_LATENCY = "compute-latency"


class Producer(NamedTuple):
    """A result in flight that a decode-stage operand may need."""
    dest: int
    value: int
    ready: bool


class Operands(NamedTuple):
    rs1_val: int
    rs2_val: int
    stall_kind: Optional[str]


class HazardUnit:
    """
    Data-hazard forwarding for the decode stage.

    Producers are scanned newest first, so when the instruction in execute
    and the one in memory/write-back both write the consumed register, the
    execute-stage value wins. A matching producer whose value is not ready
    yet is a pending load and turns into a load-use stall.
    """

    @staticmethod
    def window(ex_out: Stage2Latch, wb_out: Stage2Latch) -> List[Producer]:
        """
        Build the producer list for this cycle from the execute output
        (newest) and the memory/write-back output (older).
        """
        producers: List[Producer] = []
        for latch in (ex_out, wb_out):
            if not latch.valid or not latch.ctrl.reg_write or latch.rd == 0:
                continue
            if latch.ready:
                producers.append(Producer(latch.rd, latch.result, True))
            else:
                producers.append(Producer(latch.rd, 0, False))
        return producers

    @staticmethod
    def resolve(reg: int, reg_val: int,
                producers: List[Producer]) -> Tuple[int, Optional[str]]:
        """Return (value, stall_kind) for one source register."""
        if reg == 0:
            return 0, None
        for producer in producers:
            if producer.dest == reg:
                if not producer.ready:
                    return reg_val, StallKind.LOAD_USE
                return producer.value, None
        return reg_val, None

    @staticmethod
    def check(ctrl: ControlSignals, inst: DecodedInstruction,
              rs1_val: int, rs2_val: int,
              producers: List[Producer]) -> Operands:
        stall = None
        if ctrl.uses_rs1:
            rs1_val, stall = HazardUnit.resolve(inst.rs1, rs1_val, producers)
        if ctrl.uses_rs2:
            rs2_val, stall2 = HazardUnit.resolve(inst.rs2, rs2_val, producers)
            stall = stall or stall2
        return Operands(rs1_val, rs2_val, stall)

# ─────────────────────────────────────────────────────────────────────────────
# Early branch / jump resolution
# ─────────────────────────────────────────────────────────────────────────────

class BranchResolver:
    """Computes the next fetch address in the decode stage."""

    @staticmethod
    def resolve(ctrl: ControlSignals, pc: int, rs1_val: int,
                rs2_val: int) -> Tuple[int, bool]:
        """Returns (next_pc, taken) from already-forwarded operands."""
        if ctrl.is_branch:
            equal = to_unsigned_32(rs1_val) == to_unsigned_32(rs2_val)
            taken = equal if ctrl.branch_on_equal else not equal
            if taken:
                return to_unsigned_32(pc + ctrl.imm), True
        elif ctrl.is_jal:
            return to_unsigned_32(pc + ctrl.imm), True
        elif ctrl.is_jalr:
            return to_unsigned_32(rs1_val + ctrl.imm) & ~0x3, True
        return to_unsigned_32(pc + PipelineConfig.INSTRUCTION_WIDTH), False

# ─────────────────────────────────────────────────────────────────────────────
# Execute unit
# ─────────────────────────────────────────────────────────────────────────────

class ExecuteUnit:
    """Dispatches a Stage1Latch to the ALU or multiplier."""

    def __init__(self, config: PipelineConfig):
        self.mul_latency = config.mul_latency

    def latency_for(self, ctrl: ControlSignals) -> int:
        return self.mul_latency if ctrl.is_mult else 0

    def execute(self, latch: Stage1Latch) -> Stage2Latch:
        if not latch.valid:
            return Stage2Latch.bubble()

        ctrl = latch.ctrl
        a, b = latch.rs1_val, latch.rs2_val
        if ctrl.is_alu:
            result = ALU.execute(a, latch.imm if ctrl.alu_src else b, ctrl.alu_op)
        elif ctrl.is_mult:
            result = Multiplier.execute(a, b, ctrl.alu_op)
        elif ctrl.is_load or ctrl.is_store:
            result = ALU.execute(a, latch.imm, ALU.ADD)
        elif ctrl.is_jal or ctrl.is_jalr:
            result = to_unsigned_32(latch.pc + PipelineConfig.INSTRUCTION_WIDTH)
        elif ctrl.is_lui:
            result = to_unsigned_32(latch.imm)
        elif ctrl.is_auipc:
            result = to_unsigned_32(latch.pc + latch.imm)
        else:
            result = 0  # branches carry no result past execute

        return Stage2Latch(latch.inst, ctrl, result=result,
                           store_data=b if ctrl.is_store else 0,
                           pc=latch.pc, ready=not ctrl.is_load)

# ─────────────────────────────────────────────────────────────────────────────
# Driver observables
# ─────────────────────────────────────────────────────────────────────────────

class State:
    RUNNING = "RUNNING"
    STALLED = "STALLED"
    HALTED  = "HALTED"
    FAULTED = "FAULTED"

    TERMINAL = (HALTED, FAULTED)


class Fault:
    """What stopped the model: error kind, offending PC and cycle."""

    __slots__ = ("kind", "pc", "cycle", "message")

    def __init__(self, kind: str, pc: int, cycle: int, message: str):
        self.kind = kind
        self.pc = pc
        self.cycle = cycle
        self.message = message

    def __repr__(self):
        return (f"Fault({self.kind} at pc={self.pc:#010x} "
                f"cycle={self.cycle}: {self.message})")


class TickReport:
    """Observable result of one step(), handed to observers."""

    __slots__ = ("cycle", "pc", "state", "stall_kind", "halt_reason",
                 "fault", "ex", "wb")

    def __init__(self, cycle: int, pc: int, state: str,
                 stall_kind: Optional[str] = None,
                 halt_reason: Optional[str] = None,
                 fault: Optional[Fault] = None,
                 ex: Optional[Stage1Latch] = None,
                 wb: Optional[Stage2Latch] = None):
        self.cycle = cycle
        self.pc = pc
        self.state = state
        self.stall_kind = stall_kind
        self.halt_reason = halt_reason
        self.fault = fault
        self.ex = ex
        self.wb = wb

    @property
    def stalled(self) -> bool:
        return self.state == State.STALLED

    @property
    def halted(self) -> bool:
        return self.state == State.HALTED

    def __repr__(self):
        return (f"TickReport(cycle={self.cycle}, pc={self.pc:#x}, "
                f"state={self.state}, stall={self.stall_kind})")

# ─────────────────────────────────────────────────────────────────────────────
# Pipelined CPU
# ─────────────────────────────────────────────────────────────────────────────

class PipelineCPU:
    """
    3-stage in-order pipeline driver:
      - decode-stage forwarding from execute (newest) and mem/wb (older)
      - one load-use stall for a consumer directly behind a load
      - multiplier holds execute for the configured latency
      - branches and jumps resolved in decode, so no control bubbles
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 verbose: bool = False):
        self.config = config or PipelineConfig()
        self.verbose = verbose
        self.observers: List[Callable[[TickReport], None]] = []
        if verbose:
            self.observers.append(self._print_state)
        self.i_mem = InstructionMemory()
        self.execute_unit = ExecuteUnit(self.config)
        self.reset()

    def reset(self):
        """Fresh architectural state and empty latches; program is kept."""
        self.arch = ArchitecturalState(self.config)
        self.s1 = Stage1Latch.bubble()
        self.s2 = Stage2Latch.bubble()
        self.state = State.RUNNING
        self.fault: Optional[Fault] = None
        self.halt_reason: Optional[str] = None
        self.last_report: Optional[TickReport] = None
        self._blame_pc = 0  # PC reported if the current tick faults

        # Stats
        self.retired = 0
        self.stall_count = 0
        self.load_use_stalls = 0
        self.compute_stalls = 0
        self.taken_count = 0

    # ── Convenience views ───────────────────────────────────────────────

    @property
    def pc(self) -> int:
        return self.arch.pc

    @property
    def cycle_count(self) -> int:
        return self.arch.cycle

    @property
    def rf(self) -> RegisterFile:
        return self.arch.regs

    @property
    def d_mem(self) -> DataMemory:
        return self.arch.memory

    @property
    def halted(self) -> bool:
        return self.state in State.TERMINAL

    def add_observer(self, callback: Callable[[TickReport], None]):
        self.observers.append(callback)

    # ── Program loading ─────────────────────────────────────────────────

    def load_program(self, instructions: List[int]):
        """Install the instruction image at address 0."""
        self.i_mem = InstructionMemory(instructions)

    def load_data(self, words: List[int], base_addr: int = 0):
        """Preload data memory words starting at byte address base_addr."""
        for i, word in enumerate(words):
            self.arch.memory.write_word(base_addr + i * 4, word)

    # ── Pipeline stages ─────────────────────────────────────────────────

    def _stage_memory_writeback(self, latch: Stage2Latch) -> Stage2Latch:
        """Stage 3: the single load/store and the register commit."""
        if not latch.valid:
            return latch
        self._blame_pc = latch.pc
        ctrl = latch.ctrl
        if ctrl.is_load:
            value = self.arch.memory.read_word(latch.result)
            latch = Stage2Latch(latch.inst, ctrl, result=value, pc=latch.pc)
        elif ctrl.is_store:
            self.arch.memory.write_word(latch.result, latch.store_data)
        if ctrl.reg_write:
            self.arch.regs.write(latch.rd, latch.result)
        self.retired += 1
        return latch

    def _stage_decode(self, pc: int) -> Tuple[DecodedInstruction, ControlSignals, int, int]:
        """Stage 1 front half: fetch, decode, raw register reads."""
        self._blame_pc = pc
        inst = DecodedInstruction(self.i_mem.read_instruction(pc))
        ctrl = ControlSignals.decode(inst)
        rs1_val = self.arch.regs.read(inst.rs1)
        rs2_val = self.arch.regs.read(inst.rs2)
        return inst, ctrl, rs1_val, rs2_val

    def _drain(self, ex_out: Stage2Latch, s1: Stage1Latch):
        """Complete everything still in flight at a halt."""
        if s1.valid and s1.remaining > 0:
            # a multiply still owes its latency before it can retire
            self.arch.cycle += s1.remaining
            self.stall_count += s1.remaining
            self.compute_stalls += s1.remaining
        self._stage_memory_writeback(ex_out)
        self._stage_memory_writeback(self.execute_unit.execute(s1))
        self.s1 = Stage1Latch.bubble()
        self.s2 = Stage2Latch.bubble()

    # ── Main cycle ──────────────────────────────────────────────────────

    def step(self) -> TickReport:
        """Execute one pipeline cycle."""
        if self.state in State.TERMINAL:
            return self.last_report

        self.arch.cycle += 1
        self._blame_pc = self.arch.pc
        try:
            report = self._tick()
        except PipelineError as err:
            self.fault = Fault(err.kind, self._blame_pc, self.arch.cycle, str(err))
            self.state = State.FAULTED
            report = TickReport(self.arch.cycle, self.arch.pc, self.state,
                                fault=self.fault, ex=self.s1, wb=self.s2)

        self.last_report = report
        for observer in self.observers:
            observer(report)
        return report

    def _tick(self) -> TickReport:
        # ── Stage 3 (previous Stage2Latch) ──
        wb_out = self._stage_memory_writeback(self.s2)

        # ── Stage 2 (previous Stage1Latch) ──
        if self.s1.valid and self.s1.remaining > 0:
            # Multiplier still busy: hold execute, feed a bubble to stage 3
            self.s1 = self.s1.held()
            self.s2 = Stage2Latch.bubble()
            return self._stall(StallKind.COMPUTE_LATENCY)
        ex_out = self.execute_unit.execute(self.s1)

        # ── Stage 1 ──
        pc = self.arch.pc
        if pc == self.i_mem.end_address:
            return self._halt(ex_out, "end of program")

        inst, ctrl, rs1_val, rs2_val = self._stage_decode(pc)
        if ctrl.halt:
            self.retired += 1
            return self._halt(ex_out, ctrl.mnemonic)

        producers = HazardUnit.window(ex_out, wb_out)
        operands = HazardUnit.check(ctrl, inst, rs1_val, rs2_val, producers)
        if operands.stall_kind:
            self.s1 = Stage1Latch.bubble()
            self.s2 = ex_out
            return self._stall(operands.stall_kind)

        next_pc, taken = BranchResolver.resolve(
            ctrl, pc, operands.rs1_val, operands.rs2_val)
        if taken:
            self.taken_count += 1

        self.s2 = ex_out
        self.s1 = Stage1Latch(inst, ctrl, operands.rs1_val, operands.rs2_val,
                              pc=pc,
                              remaining=self.execute_unit.latency_for(ctrl))
        self.arch.pc = next_pc
        self.state = State.RUNNING

        if next_pc == self.i_mem.end_address:
            # Fell off the end: finish in-flight work this cycle
            return self._halt(self.s2, "end of program", s1=self.s1)

        return TickReport(self.arch.cycle, self.arch.pc, self.state,
                          ex=self.s1, wb=self.s2)

    def _stall(self, kind: str) -> TickReport:
        self.state = State.STALLED
        self.stall_count += 1
        if kind == StallKind.LOAD_USE:
            self.load_use_stalls += 1
        else:
            self.compute_stalls += 1
        return TickReport(self.arch.cycle, self.arch.pc, self.state,
                          stall_kind=kind, ex=self.s1, wb=self.s2)

    def _halt(self, ex_out: Stage2Latch, reason: str,
              s1: Optional[Stage1Latch] = None) -> TickReport:
        self._drain(ex_out, s1 or Stage1Latch.bubble())
        self.state = State.HALTED
        self.halt_reason = reason
        return TickReport(self.arch.cycle, self.arch.pc, self.state,
                          halt_reason=reason, ex=self.s1, wb=self.s2)

    def run(self, max_cycles: int = 1000) -> str:
        """Step until HALTED/FAULTED or max_cycles ticks have elapsed."""
        for _ in range(max_cycles):
            if self.state in State.TERMINAL:
                break
            self.step()
        return self.state

    # ── Debug / display ─────────────────────────────────────────────────

    def _print_state(self, report: TickReport):
        flag = ""
        if report.stall_kind:
            flag = f"  (stall: {report.stall_kind})"
        elif report.halt_reason:
            flag = f"  (halt: {report.halt_reason})"
        elif report.fault:
            flag = f"  (fault: {report.fault.kind})"
        print(f"  [Cycle {report.cycle:4d}]  PC={report.pc:#010x}{flag}")
        if report.ex is not None:
            print(f"      S1/S2: {report.ex.describe()}")
        if report.wb is not None:
            print(f"      S2/S3: {report.wb.describe()}")

    def dump_registers(self):
        print("\n═══ Register File ═══")
        for i in range(0, 32, 4):
            regs = "  ".join(
                f"x{i+j:<2d}={self.rf[i+j]:#010x}" for j in range(4)
            )
            print(f"  {regs}")

    def dump_memory(self, limit: int = 32):
        print("\n═══ Data Memory (non-zero) ═══")
        count = 0
        for index, value in enumerate(self.d_mem.words):
            if value != 0:
                print(f"  [{index * 4:#010x}] = {value:#010x}  "
                      f"({to_signed_32(value)})")
                count += 1
                if count >= limit:
                    print("  ... (truncated)")
                    break
        if count == 0:
            print("  (empty)")

    def dump_stats(self):
        print("\n═══ Simulation Statistics ═══")
        print(f"  Final state:          {self.state}"
              + (f" ({self.halt_reason})" if self.halt_reason else ""))
        if self.fault:
            print(f"  Fault:                {self.fault.kind} at "
                  f"pc={self.fault.pc:#010x} cycle {self.fault.cycle}: "
                  f"{self.fault.message}")
        print(f"  Total cycles:         {self.cycle_count}")
        print(f"  Instructions retired: {self.retired}")
        if self.retired > 0:
            print(f"  CPI:                  {self.cycle_count / self.retired:.2f}")
        print(f"  Stall cycles:         {self.stall_count} "
              f"(load-use {self.load_use_stalls}, "
              f"compute {self.compute_stalls})")
        print(f"  Taken branches/jumps: {self.taken_count}")

# ─────────────────────────────────────────────────────────────────────────────
# Encoder helpers
# ─────────────────────────────────────────────────────────────────────────────

class Asm:
    """Encoders for every instruction the decoder accepts."""

    @staticmethod
    def r_type(funct7: int, rs2: int, rs1: int, funct3: int, rd: int,
               opcode: int) -> int:
        return ((funct7 & 0x7F) << 25 | (rs2 & 0x1F) << 20 | (rs1 & 0x1F) << 15
                | (funct3 & 0x7) << 12 | (rd & 0x1F) << 7 | opcode)

    @staticmethod
    def i_type(imm: int, rs1: int, funct3: int, rd: int, opcode: int) -> int:
        if not -2048 <= imm <= 2047:
            raise MalformedImmediate(f"I-type immediate {imm} out of range")
        return ((imm & 0xFFF) << 20 | (rs1 & 0x1F) << 15 | (funct3 & 0x7) << 12
                | (rd & 0x1F) << 7 | opcode)

    @staticmethod
    def s_type(imm: int, rs2: int, rs1: int, funct3: int, opcode: int) -> int:
        if not -2048 <= imm <= 2047:
            raise MalformedImmediate(f"S-type immediate {imm} out of range")
        imm &= 0xFFF
        return ((imm >> 5) << 25 | (rs2 & 0x1F) << 20 | (rs1 & 0x1F) << 15
                | (funct3 & 0x7) << 12 | (imm & 0x1F) << 7 | opcode)

    @staticmethod
    def b_type(offset: int, rs2: int, rs1: int, funct3: int) -> int:
        if not -4096 <= offset <= 4094 or offset & 0x1:
            raise MalformedImmediate(f"branch offset {offset} out of range")
        imm = offset & 0x1FFF
        return (((imm >> 12) & 0x1) << 31 | ((imm >> 5) & 0x3F) << 25
                | (rs2 & 0x1F) << 20 | (rs1 & 0x1F) << 15 | (funct3 & 0x7) << 12
                | ((imm >> 1) & 0xF) << 8 | ((imm >> 11) & 0x1) << 7
                | Opcode.BRANCH)

    @staticmethod
    def u_type(imm20: int, rd: int, opcode: int) -> int:
        return (imm20 & 0xFFFFF) << 12 | (rd & 0x1F) << 7 | opcode

    @staticmethod
    def j_type(offset: int, rd: int) -> int:
        if not -(1 << 20) <= offset < (1 << 20) or offset & 0x1:
            raise MalformedImmediate(f"jump offset {offset} out of range")
        imm = offset & 0x1FFFFF
        return (((imm >> 20) & 0x1) << 31 | ((imm >> 1) & 0x3FF) << 21
                | ((imm >> 11) & 0x1) << 20 | ((imm >> 12) & 0xFF) << 12
                | (rd & 0x1F) << 7 | Opcode.JAL)

    # R-type
    @staticmethod
    def add(rd, rs1, rs2):  return Asm.r_type(0x00, rs2, rs1, 0, rd, Opcode.OP)
    @staticmethod
    def sub(rd, rs1, rs2):  return Asm.r_type(0x20, rs2, rs1, 0, rd, Opcode.OP)
    @staticmethod
    def sll(rd, rs1, rs2):  return Asm.r_type(0x00, rs2, rs1, 1, rd, Opcode.OP)
    @staticmethod
    def slt(rd, rs1, rs2):  return Asm.r_type(0x00, rs2, rs1, 2, rd, Opcode.OP)
    @staticmethod
    def sltu(rd, rs1, rs2): return Asm.r_type(0x00, rs2, rs1, 3, rd, Opcode.OP)
    @staticmethod
    def xor(rd, rs1, rs2):  return Asm.r_type(0x00, rs2, rs1, 4, rd, Opcode.OP)
    @staticmethod
    def srl(rd, rs1, rs2):  return Asm.r_type(0x00, rs2, rs1, 5, rd, Opcode.OP)
    @staticmethod
    def sra(rd, rs1, rs2):  return Asm.r_type(0x20, rs2, rs1, 5, rd, Opcode.OP)
    @staticmethod
    def or_(rd, rs1, rs2):  return Asm.r_type(0x00, rs2, rs1, 6, rd, Opcode.OP)
    @staticmethod
    def and_(rd, rs1, rs2): return Asm.r_type(0x00, rs2, rs1, 7, rd, Opcode.OP)
    @staticmethod
    def mul(rd, rs1, rs2):    return Asm.r_type(0x01, rs2, rs1, 0, rd, Opcode.OP)
    @staticmethod
    def mulh(rd, rs1, rs2):   return Asm.r_type(0x01, rs2, rs1, 1, rd, Opcode.OP)
    @staticmethod
    def mulhsu(rd, rs1, rs2): return Asm.r_type(0x01, rs2, rs1, 2, rd, Opcode.OP)
    @staticmethod
    def mulhu(rd, rs1, rs2):  return Asm.r_type(0x01, rs2, rs1, 3, rd, Opcode.OP)

    # I-type ALU
    @staticmethod
    def addi(rd, rs1, imm):  return Asm.i_type(imm, rs1, 0, rd, Opcode.OP_IMM)
    @staticmethod
    def slti(rd, rs1, imm):  return Asm.i_type(imm, rs1, 2, rd, Opcode.OP_IMM)
    @staticmethod
    def sltiu(rd, rs1, imm): return Asm.i_type(imm, rs1, 3, rd, Opcode.OP_IMM)
    @staticmethod
    def xori(rd, rs1, imm):  return Asm.i_type(imm, rs1, 4, rd, Opcode.OP_IMM)
    @staticmethod
    def ori(rd, rs1, imm):   return Asm.i_type(imm, rs1, 6, rd, Opcode.OP_IMM)
    @staticmethod
    def andi(rd, rs1, imm):  return Asm.i_type(imm, rs1, 7, rd, Opcode.OP_IMM)
    @staticmethod
    def slli(rd, rs1, shamt): return Asm.r_type(0x00, shamt, rs1, 1, rd, Opcode.OP_IMM)
    @staticmethod
    def srli(rd, rs1, shamt): return Asm.r_type(0x00, shamt, rs1, 5, rd, Opcode.OP_IMM)
    @staticmethod
    def srai(rd, rs1, shamt): return Asm.r_type(0x20, shamt, rs1, 5, rd, Opcode.OP_IMM)

    # Upper immediates
    @staticmethod
    def lui(rd, imm20):   return Asm.u_type(imm20, rd, Opcode.LUI)
    @staticmethod
    def auipc(rd, imm20): return Asm.u_type(imm20, rd, Opcode.AUIPC)

    # Memory
    @staticmethod
    def lw(rd, offset, rs1):  return Asm.i_type(offset, rs1, 2, rd, Opcode.LOAD)
    @staticmethod
    def sw(rs2, offset, rs1): return Asm.s_type(offset, rs2, rs1, 2, Opcode.STORE)

    # Control flow
    @staticmethod
    def beq(rs1, rs2, offset): return Asm.b_type(offset, rs2, rs1, 0)
    @staticmethod
    def bne(rs1, rs2, offset): return Asm.b_type(offset, rs2, rs1, 1)
    @staticmethod
    def jal(rd, offset):       return Asm.j_type(offset, rd)
    @staticmethod
    def jalr(rd, rs1, offset): return Asm.i_type(offset, rs1, 0, rd, Opcode.JALR)

    @staticmethod
    def ecall():  return 0x00000073
    @staticmethod
    def ebreak(): return 0x00100073

    @staticmethod
    def nop():    return Asm.addi(0, 0, 0)

# ─────────────────────────────────────────────────────────────────────────────
# Program loading
# ─────────────────────────────────────────────────────────────────────────────

def read_hex_file(path: str) -> List[int]:
    """One 32-bit hex word per line; blank lines and '#' comments skipped."""
    words = []
    with open(path, "r") as f:
        for line in f:
            line = line.split("#", 1)[0].strip()
            if line:
                words.append(to_unsigned_32(int(line, 16)))
    return words

# ─────────────────────────────────────────────────────────────────────────────
# Demo program
# ─────────────────────────────────────────────────────────────────────────────

def demo_program() -> List[int]:
    """
    Sums 5..1 with a loop whose exit branch is resolved in decode:

        addi x1, x0, 5        # x1 = 5
        addi x2, x0, 0        # x2 = 0
    loop:
        beq  x1, x0, end      # exit when x1 == 0
        add  x2, x2, x1       # x2 += x1
        addi x1, x1, -1       # x1 -= 1
        beq  x0, x0, loop
    end:
        sw   x2, 0(x0)        # mem[0] = 15
        ebreak
    """
    return [
        0x00500093,  # addi x1, x0, 5
        0x00000113,  # addi x2, x0, 0
        0x00008863,  # beq  x1, x0, +16
        0x00110133,  # add  x2, x2, x1
        0xFFF08093,  # addi x1, x1, -1
        0xFE000AE3,  # beq  x0, x0, -12
        0x00202023,  # sw   x2, 0(x0)
        0x00100073,  # ebreak
    ]

# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="RV32 3-stage pipeline simulator"
    )
    parser.add_argument("--file", "-f", type=str, default=None,
                        help="Path to a hex file with one instruction per line")
    parser.add_argument("--data", "-d", type=str, default=None,
                        help="Hex file preloaded into data memory at address 0")
    parser.add_argument("--cycles", "-n", type=int, default=1000,
                        help="Maximum simulation cycles (default 1000)")
    parser.add_argument("--mul-latency", type=int,
                        default=PipelineConfig.DEFAULT_MUL_LATENCY,
                        help="Extra execute cycles for multiplies "
                             f"(default {PipelineConfig.DEFAULT_MUL_LATENCY})")
    parser.add_argument("--mem-words", type=int,
                        default=PipelineConfig.DEFAULT_MEMORY_WORDS,
                        help="Data memory size in 32-bit words "
                             f"(default {PipelineConfig.DEFAULT_MEMORY_WORDS})")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Print state every cycle")
    args = parser.parse_args(argv)

    try:
        config = PipelineConfig(mul_latency=args.mul_latency,
                                memory_words=args.mem_words)
    except ValueError as err:
        parser.error(str(err))

    cpu = PipelineCPU(config, verbose=args.verbose)

    try:
        instructions = read_hex_file(args.file) if args.file else None
        data = read_hex_file(args.data) if args.data else None
    except ValueError as err:
        parser.error(f"bad hex word: {err}")

    if instructions is not None:
        cpu.load_program(instructions)
        print(f"Loaded {len(instructions)} instructions from {args.file}")
    else:
        prog = demo_program()
        cpu.load_program(prog)
        print(f"Running built-in demo program ({len(prog)} instructions)\n")

    if data is not None:
        try:
            cpu.load_data(data)
        except PipelineError as err:
            parser.error(f"data file does not fit: {err}")

    cpu.run(max_cycles=args.cycles)

    cpu.dump_registers()
    cpu.dump_memory()
    cpu.dump_stats()

    if cpu.state == State.FAULTED:
        return 2
    if cpu.state != State.HALTED:
        print(f"\n  Cycle limit ({args.cycles}) reached before halt")
        return 1

    # Quick sanity checks for the demo program
    if not args.file:
        print("\n═══ Demo Assertions ═══")
        checks = [
            (cpu.rf[1], 0,          "x1 = 0  (loop counter exhausted)"),
            (cpu.rf[2], 15,         "x2 = 15 (5+4+3+2+1)"),
            (cpu.d_mem.read_word(0), 15, "mem[0] = 15"),
            (cpu.stall_count, 0,    "no stall cycles"),
        ]
        all_pass = True
        for actual, expected, desc in checks:
            status = "✓" if actual == expected else "✗"
            if status == "✗":
                all_pass = False
            print(f"  {status}  {desc}  (got {actual}, expected {expected})")

        if all_pass:
            print("\n  All checks passed")
        else:
            print("\n  Some checks failed, debug with --verbose")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
