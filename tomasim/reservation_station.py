from typing import Optional, Tuple

from .instruction import Instruction, OpCode, UnitKind

class ReservationStation:
    """Represents a single reservation station slot of a functional unit kind."""

    def __init__(
        self,
        name: str,
        fu_type: UnitKind,
        latency: int,
        address_latency: Optional[int] = None,
        memory_latency: Optional[int] = None,
        index: int = 0,
    ):
        """
        Initializes a reservation station entry.

        Args:
            name: Unique display name for this RS (e.g., "Load1", "Add3").
            fu_type: The kind of functional unit this RS belongs to.
            latency: Total cycles needed for the operation.
            address_latency: For LOAD/STORE, the cycles spent computing the
                             effective address before the memory access.
                             Defaults to the full latency.
            memory_latency: For LOAD/STORE, the cycles of the memory access.
                            Must add up with address_latency to latency.
            index: Position in the processor's pool. Used as the operand tag.
        """
        if latency < 1:
            raise ValueError(f"Latency of {name} must be at least 1 cycle, got {latency}")
        if address_latency is None and memory_latency is not None:
            address_latency = latency - memory_latency
        if address_latency is not None:
            if fu_type not in (UnitKind.LOAD, UnitKind.STORE):
                raise ValueError(f"Only LOAD/STORE stations take an address latency ({name} is {fu_type.name})")
            if not (0 <= address_latency <= latency):
                raise ValueError(f"Address latency of {name} must be between 0 and {latency}, got {address_latency}")
            if memory_latency is not None and address_latency + memory_latency != latency:
                raise ValueError(
                    f"Address ({address_latency}) and memory ({memory_latency}) latencies of {name} "
                    f"must add up to the total latency {latency}"
                )

        self.name: str = name
        self.fu_type: UnitKind = fu_type
        self.index: int = index
        self.latency: int = latency  # cyclesNeeded
        self.address_latency: int = latency if address_latency is None else address_latency
        self.memory_latency: int = latency - self.address_latency

        # State fields, reset by clear()
        self.busy: bool = False
        self.instruction: Optional[Instruction] = None
        self.op_type: Optional[OpCode] = None

        self.Vj: Optional[int] = None  # Value of source operand 1
        self.Vk: Optional[int] = None  # Value of source operand 2
        self.Qj: Optional[int] = None  # Index of the RS producing Vj (if not ready)
        self.Qk: Optional[int] = None  # Index of the RS producing Vk (if not ready)

        self.A: Optional[int] = None   # Offset, then effective address / branch offset / jump target
        self.address_ready: bool = False
        self.result: Optional[int] = None

        self.original_pc: Optional[int] = None
        self.seq: Optional[int] = None  # Issue order, increasing over the whole run
        self.cycles_passed: int = 0

        # Register-Status Table as it was when a BEQ was issued
        self.rat_checkpoint: Optional[Tuple[Optional[int], ...]] = None

    def issue(
        self,
        instruction: Instruction,
        pc: int,
        seq: int,
        vj_val: Optional[int], qj_tag: Optional[int],
        vk_val: Optional[int], qk_tag: Optional[int],
        imm_or_addr: Optional[int],
    ) -> None:
        """Populates the RS when an instruction is issued to it."""
        if self.busy:
            raise RuntimeError(f"Cannot issue to already busy RS: {self.name}")
        if vj_val is not None and qj_tag is not None:
            raise ValueError(f"{self.name}: operand j cannot have both a value and a tag")
        if vk_val is not None and qk_tag is not None:
            raise ValueError(f"{self.name}: operand k cannot have both a value and a tag")

        self.busy = True
        self.instruction = instruction
        self.op_type = instruction.opcode
        self.original_pc = pc
        self.seq = seq

        self.Vj = vj_val
        self.Qj = qj_tag
        self.Vk = vk_val
        self.Qk = qk_tag
        self.A = imm_or_addr
        self.address_ready = False
        self.result = None
        self.cycles_passed = 0
        self.rat_checkpoint = None

    def clear(self) -> None:
        """Resets the reservation station to be free and clears all fields."""
        self.busy = False
        self.instruction = None
        self.op_type = None
        self.Vj = None
        self.Vk = None
        self.Qj = None
        self.Qk = None
        self.A = None
        self.address_ready = False
        self.result = None
        self.original_pc = None
        self.seq = None
        self.cycles_passed = 0
        self.rat_checkpoint = None

    def operands_ready(self) -> bool:
        return self.Qj is None and self.Qk is None

    def advance(self) -> bool:
        """
        Counts one cycle of work. The counter moves while the RS is busy, both
        operands are ready and either the latency has not elapsed or a result is
        waiting for the CDB.

        Returns:
            True if the counter moved.
        """
        if not self.busy or not self.operands_ready():
            return False
        if self.cycles_passed < self.latency or self.result is not None:
            self.cycles_passed += 1
            return True
        return False

    def address_phase_done(self) -> bool:
        return self.busy and self.cycles_passed >= self.address_latency

    def latency_elapsed(self) -> bool:
        return self.busy and self.cycles_passed >= self.latency

    def ready_for_cdb(self) -> bool:
        """A result is held and the station has gone past its latency."""
        return self.busy and self.result is not None and self.cycles_passed > self.latency

    def snoop_cdb(self, broadcasting_index: int, result_value: int) -> bool:
        """
        Monitors the Common Data Bus (CDB) for results.
        If this RS is waiting for broadcasting_index, it captures the value.

        Returns:
            True if this RS captured a value, False otherwise.
        """
        updated = False
        if self.busy:
            if self.Qj == broadcasting_index:
                self.Vj = result_value
                self.Qj = None
                updated = True
            if self.Qk == broadcasting_index:
                self.Vk = result_value
                self.Qk = None
                updated = True
        return updated

    def __str__(self) -> str:
        if not self.busy:
            return f"RS({self.name}, FU: {self.fu_type.name}): Free"

        qj_str = f"Val:{self.Vj}" if self.Qj is None else f"Tag:#{self.Qj}"
        qk_str = f"Val:{self.Vk}" if self.Qk is None else f"Tag:#{self.Qk}"

        timing_info = f", Cycles:{self.cycles_passed}/{self.latency}"
        if self.result is not None:
            timing_info += f", Result:{self.result}"

        return (
            f"RS({self.name}, FU: {self.fu_type.name}, Busy: {self.busy}, Op: {self.op_type.name if self.op_type else 'N/A'}, "
            f"Instr: '{self.instruction}', PC: {self.original_pc}, "
            f"Vj: {qj_str}, Vk: {qk_str}, A: {self.A}{timing_info})"
        )
