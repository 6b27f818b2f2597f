from enum import Enum
from typing import Optional, Tuple

from . import config

class OpCode(Enum):
    """Operation codes. The value is the 4-bit opcode field of the encoded word."""
    LOAD = 0     # Load: LOAD rA, offset(rB)
    STORE = 1    # Store: STORE rA, offset(rB)
    BEQ = 2      # Branch if Equal: BEQ rA, rB, offset (relative to PC + 1)
    CALL = 3     # Call: CALL label, return address goes to R1
    RET = 4      # Return: jump to the address held in R1
    ADD = 5      # Add: ADD rA, rB, rC
    SUB = 6      # Subtract: SUB rA, rB, rC
    NOR = 7      # Nor: NOR rA, rB, rC
    MUL = 8      # Multiply: MUL rA, rB, rC

class UnitKind(Enum):
    """Functional unit kinds a reservation station can belong to."""
    LOAD = "LOAD"
    STORE = "STORE"
    BEQ = "BEQ"
    CALL_RET = "CALL_RET"
    ADD_SUB = "ADD_SUB"
    NOR = "NOR"
    MUL = "MUL"

# Instruction formats
MEMORY_FORMAT = (OpCode.LOAD, OpCode.STORE, OpCode.BEQ)   # rA, rB, offset
ALU_FORMAT = (OpCode.ADD, OpCode.SUB, OpCode.NOR, OpCode.MUL)  # rA, rB, rC

OFFSET_BITS = 5
LABEL_BITS = 7
OFFSET_MIN, OFFSET_MAX = -(1 << (OFFSET_BITS - 1)), (1 << (OFFSET_BITS - 1)) - 1
LABEL_MIN, LABEL_MAX = -(1 << (LABEL_BITS - 1)), (1 << (LABEL_BITS - 1)) - 1

UNIT_FOR_OPCODE = {
    OpCode.LOAD: UnitKind.LOAD,
    OpCode.STORE: UnitKind.STORE,
    OpCode.BEQ: UnitKind.BEQ,
    OpCode.CALL: UnitKind.CALL_RET,
    OpCode.RET: UnitKind.CALL_RET,
    OpCode.ADD: UnitKind.ADD_SUB,
    OpCode.SUB: UnitKind.ADD_SUB,
    OpCode.NOR: UnitKind.NOR,
    OpCode.MUL: UnitKind.MUL,
}

_OPCODE_VALUES = frozenset(op.value for op in OpCode)


def sign_extend(value: int, bits: int) -> int:
    """Interprets the low `bits` bits of value as a two's complement number."""
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


class Instruction:
    """
    An immutable machine instruction.

    Only the fields used by the opcode's format may be given; the ones left
    out default to 0 so that decode(encode(i)) == i holds for every valid
    instruction. Fields the format does not use are always None.
    """

    __slots__ = ("_opcode", "_rA", "_rB", "_rC", "_offset", "_label")

    def __init__(
        self,
        opcode: OpCode,
        rA: Optional[int] = None,
        rB: Optional[int] = None,
        rC: Optional[int] = None,
        offset: Optional[int] = None,
        label: Optional[int] = None,
        enforce_offset_range: Optional[bool] = None,
    ):
        if not isinstance(opcode, OpCode):
            try:
                opcode = OpCode[opcode.upper()] if isinstance(opcode, str) else OpCode(opcode)
            except (KeyError, ValueError):
                raise ValueError(f"Undefined opcode: {opcode!r}")
        if enforce_offset_range is None:
            enforce_offset_range = config.ENFORCE_OFFSET_RANGE

        given = {"rA": rA, "rB": rB, "rC": rC, "offset": offset, "label": label}
        allowed = self._fields_for(opcode)
        for field_name, value in given.items():
            if value is not None and field_name not in allowed:
                raise ValueError(f"{opcode.name} does not take a {field_name} field (got {value})")

        self._opcode = opcode
        self._rA = self._register(rA, "rA") if "rA" in allowed else None
        self._rB = self._register(rB, "rB") if "rB" in allowed else None
        self._rC = self._register(rC, "rC") if "rC" in allowed else None
        self._offset = None
        self._label = None
        if "offset" in allowed:
            self._offset = int(offset or 0)
            if enforce_offset_range and not (OFFSET_MIN <= self._offset <= OFFSET_MAX):
                raise ValueError(
                    f"Offset must be a {OFFSET_BITS}-bit signed value ({OFFSET_MIN} to {OFFSET_MAX}), got {self._offset}"
                )
        if "label" in allowed:
            self._label = int(label or 0)
            if not (LABEL_MIN <= self._label <= LABEL_MAX):
                raise ValueError(
                    f"Label must be a {LABEL_BITS}-bit signed value ({LABEL_MIN} to {LABEL_MAX}), got {self._label}"
                )

    @staticmethod
    def _fields_for(opcode: OpCode) -> Tuple[str, ...]:
        if opcode in MEMORY_FORMAT:
            return ("rA", "rB", "offset")
        if opcode in ALU_FORMAT:
            return ("rA", "rB", "rC")
        if opcode == OpCode.CALL:
            return ("label",)
        return ()  # RET

    @staticmethod
    def _register(value: Optional[int], field_name: str) -> int:
        reg = int(value or 0)
        if not (0 <= reg < config.NUM_REGISTERS):
            raise ValueError(f"Invalid register number for {field_name}: {value} (must be 0-{config.NUM_REGISTERS - 1})")
        return reg

    @classmethod
    def _undefined(cls, op_bits: int, rA: int, rB: int, rC: int) -> "Instruction":
        """A word whose opcode nibble names no operation, kept in the ALU layout."""
        instr = cls.__new__(cls)
        instr._opcode = op_bits
        instr._rA, instr._rB, instr._rC = rA, rB, rC
        instr._offset = None
        instr._label = None
        return instr

    opcode = property(lambda self: self._opcode)  # int for undefined nibbles
    rA = property(lambda self: self._rA)
    rB = property(lambda self: self._rB)
    rC = property(lambda self: self._rC)
    offset = property(lambda self: self._offset)
    label = property(lambda self: self._label)

    @property
    def destination(self) -> Optional[int]:
        """Register written through the CDB, if any."""
        if self._opcode == OpCode.LOAD or self._opcode in ALU_FORMAT:
            return self._rA
        return None

    @property
    def is_defined(self) -> bool:
        return isinstance(self._opcode, OpCode)

    @property
    def name(self) -> str:
        return self._opcode.name if self.is_defined else f"UNDEFINED({self._opcode})"

    def get_fu_type(self) -> Optional[UnitKind]:
        """
        Returns the kind of functional unit (and reservation station) this
        instruction needs, or None for an undefined opcode.
        """
        return UNIT_FOR_OPCODE.get(self._opcode)

    def encode(self) -> int:
        op_value = self._opcode.value if self.is_defined else self._opcode
        word = (op_value & 0xF) << 12
        if self._opcode == OpCode.CALL:
            word |= self._label & 0x7F
        elif self._opcode in MEMORY_FORMAT:
            word |= (self._rA & 0x7) << 9
            word |= (self._rB & 0x7) << 6
            word |= self._offset & 0x1F
        elif self._opcode in ALU_FORMAT or not self.is_defined:
            word |= (self._rA & 0x7) << 9
            word |= (self._rB & 0x7) << 6
            word |= (self._rC & 0x7) << 3
        return word & 0xFFFF

    @classmethod
    def decode(cls, word: int) -> "Instruction":
        if not (0 <= word <= 0xFFFF):
            raise ValueError(f"Encoded instruction must be a 16-bit word, got {word}")
        op_bits = (word >> 12) & 0xF
        if op_bits not in _OPCODE_VALUES:
            return cls._undefined(op_bits, (word >> 9) & 0x7, (word >> 6) & 0x7, (word >> 3) & 0x7)
        opcode = OpCode(op_bits)

        if opcode == OpCode.CALL:
            return cls(opcode, label=sign_extend(word, LABEL_BITS))
        if opcode in MEMORY_FORMAT:
            return cls(
                opcode,
                rA=(word >> 9) & 0x7,
                rB=(word >> 6) & 0x7,
                offset=sign_extend(word, OFFSET_BITS),
            )
        if opcode in ALU_FORMAT:
            return cls(opcode, rA=(word >> 9) & 0x7, rB=(word >> 6) & 0x7, rC=(word >> 3) & 0x7)
        return cls(opcode)

    def _key(self):
        return (self._opcode, self._rA, self._rB, self._rC, self._offset, self._label)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Instruction):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        op = self._opcode
        if op in (OpCode.LOAD, OpCode.STORE):
            return f"{op.name} R{self._rA}, {self._offset}(R{self._rB})"
        if op == OpCode.BEQ:
            return f"BEQ R{self._rA}, R{self._rB}, {self._offset}"
        if op == OpCode.CALL:
            return f"CALL {self._label}"
        if op == OpCode.RET:
            return "RET"
        return f"{self.name} R{self._rA}, R{self._rB}, R{self._rC}"

    def __repr__(self) -> str:
        details = [f"Op:{self.name}"]
        if self._rA is not None: details.append(f"rA:R{self._rA}")
        if self._rB is not None: details.append(f"rB:R{self._rB}")
        if self._rC is not None: details.append(f"rC:R{self._rC}")
        if self._offset is not None: details.append(f"Offset:{self._offset}")
        if self._label is not None: details.append(f"Label:{self._label}")
        return "<Instruction " + ", ".join(details) + ">"


def encode(instruction: Instruction) -> int:
    """Encodes an instruction into its 16-bit word."""
    return instruction.encode()


def decode(word: int) -> Instruction:
    """
    Decodes any 16-bit word. The zero word decodes to LOAD R0, 0(R0) and an
    undefined opcode nibble to an instruction with no functional unit; fetch
    issues neither.
    """
    return Instruction.decode(word)
