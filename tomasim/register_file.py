from typing import List, Optional, Sequence, Tuple

from .config import NUM_REGISTERS, WORD_SIZE_BITS

class RegisterFile:
    """
    Simulates the register file and the Register-Status Table.

    Status entries hold the index of the reservation station that will next
    write the register, or None when the value in the register is committed.
    """

    def __init__(self, initial_values: Optional[Sequence[int]] = None):
        """Initializes registers to 0 and every status entry to committed."""
        self._word_mask = (1 << WORD_SIZE_BITS) - 1

        # Architectural registers R0-R7
        self.registers: List[int] = [0] * NUM_REGISTERS

        # Register-Status Table. R0 is constant and never renamed, but keeps a
        # slot so that indexing matches the register number.
        self.rat: List[Optional[int]] = [None] * NUM_REGISTERS

        if initial_values is not None:
            self.load(initial_values)

    def _check_index(self, reg_idx: int) -> None:
        if not (0 <= reg_idx < NUM_REGISTERS):
            raise ValueError(f"Invalid register index: {reg_idx} (must be 0-{NUM_REGISTERS - 1})")

    def _normalize_value(self, value: int) -> int:
        """Ensures the value fits within a 16-bit unsigned word (0-65535)."""
        return int(value) & self._word_mask

    def load(self, values: Sequence[int]) -> None:
        """Sets R0..R(n-1) from values. R0 stays 0 whatever is given for it."""
        if len(values) > NUM_REGISTERS:
            raise ValueError(f"Expected at most {NUM_REGISTERS} register values, got {len(values)}")
        for reg_idx, value in enumerate(values):
            self.write_physical_reg(reg_idx, value)

    def read_physical_reg(self, reg_idx: int) -> int:
        """Reads the committed value of a register. R0 always returns 0."""
        self._check_index(reg_idx)
        if reg_idx == 0:
            return 0
        return self.registers[reg_idx]

    def write_physical_reg(self, reg_idx: int, value: int) -> None:
        """Writes a value directly to a register. Writes to R0 are discarded."""
        self._check_index(reg_idx)
        if reg_idx == 0:
            return
        self.registers[reg_idx] = self._normalize_value(value)

    def get_rat_tag(self, reg_idx: int) -> Optional[int]:
        """
        Returns the station index that will produce the register, or None if the
        register value is committed. R0 is always committed.
        """
        self._check_index(reg_idx)
        if reg_idx == 0:
            return None
        return self.rat[reg_idx]

    def set_rat_tag(self, reg_idx: int, station_index: int) -> None:
        """Records station_index as the latest writer of the register. Does nothing for R0."""
        self._check_index(reg_idx)
        if reg_idx == 0:
            return
        if station_index is None or station_index < 0:
            raise ValueError(f"Cannot rename R{reg_idx} to station {station_index!r}")
        self.rat[reg_idx] = station_index

    def clear_rat_tag(self, reg_idx: int) -> None:
        """Marks the register value as committed."""
        self._check_index(reg_idx)
        self.rat[reg_idx] = None

    def read_operand(self, reg_idx: int) -> Tuple[Optional[int], Optional[int]]:
        """
        Returns (value, tag) for a source operand: the committed value with no
        tag, or no value and the producing station's index.
        """
        tag = self.get_rat_tag(reg_idx)
        if tag is not None:
            return None, tag
        return self.read_physical_reg(reg_idx), None

    def checkpoint(self) -> Tuple[Optional[int], ...]:
        """Copy of the status table, restored when a speculative path is squashed."""
        return tuple(self.rat)

    def restore(self, saved: Sequence[Optional[int]]) -> None:
        if len(saved) != NUM_REGISTERS:
            raise ValueError(f"Checkpoint must have {NUM_REGISTERS} entries, got {len(saved)}")
        self.rat = list(saved)
        self.rat[0] = None

    def on_broadcast(self, station_index: int, result_value: int, write_through: Sequence[int] = ()) -> List[int]:
        """
        Called when a result is broadcast on the CDB.
        Updates every register whose status entry names station_index and marks it
        committed. Registers listed in write_through receive the value without their
        status entry being touched (their entry names a younger speculative writer).

        Returns:
            A list of register indices that were updated.
        """
        updated_regs = []
        # R0 is never updated
        for i in range(1, NUM_REGISTERS):
            if self.rat[i] == station_index:
                self.write_physical_reg(i, result_value)
                self.clear_rat_tag(i)
                updated_regs.append(i)
            elif i in write_through:
                self.write_physical_reg(i, result_value)
                updated_regs.append(i)
        return updated_regs

    def snapshot(self) -> Tuple[int, ...]:
        return tuple(self.read_physical_reg(i) for i in range(NUM_REGISTERS))

    def __str__(self) -> str:
        reg_strs = []
        for i in range(NUM_REGISTERS):
            val = self.read_physical_reg(i)
            tag = self.get_rat_tag(i)
            reg_strs.append(f"R{i}: {val:04x} ({val}){' (Pending: RS#' + str(tag) + ')' if tag is not None else ''}")
        return "RegisterFile:\n  " + "\n  ".join(reg_strs)
