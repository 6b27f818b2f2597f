import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from . import config as global_config
from .config import LINK_REGISTER, MEMORY_SIZE_WORDS, WORD_SIZE_BITS
from .instruction import OFFSET_MAX, OFFSET_MIN, UNIT_FOR_OPCODE, Instruction, OpCode, UnitKind
from .memory import Memory
from .register_file import RegisterFile
from .reservation_station import ReservationStation

logger = logging.getLogger(__name__)

_WORD_MASK = (1 << WORD_SIZE_BITS) - 1

# Kinds whose result goes out on the CDB
_CDB_PRODUCERS = (UnitKind.LOAD, UnitKind.ADD_SUB, UnitKind.NOR, UnitKind.MUL)


class TrackerEntry(NamedTuple):
    """One event in the Issued / Executed / WrittenBack history."""
    instruction: Instruction
    cycle: int
    station: str
    station_index: int
    pc: int
    seq: int


def unit_kind_of(kind: Union[UnitKind, OpCode, str]) -> UnitKind:
    """Accepts a UnitKind, an OpCode, or either's name ("ADD_SUB", "ADD", "CALL", ...)."""
    if isinstance(kind, UnitKind):
        return kind
    if isinstance(kind, OpCode):
        return UNIT_FOR_OPCODE[kind]
    if isinstance(kind, str):
        name = kind.strip().upper()
        if name in UnitKind.__members__:
            return UnitKind[name]
        if name in OpCode.__members__:
            return UNIT_FOR_OPCODE[OpCode[name]]
    raise ValueError(f"Unknown functional unit kind: {kind!r}")


class Processor:
    """
    Orchestrates the Tomasulo algorithm simulation.

    All machine state (memory, registers, stations, PC, pending flags and the
    history trackers) lives on the instance. Each call to step() runs one clock
    cycle: advance station timers, Issue, Execute, Writeback.
    """

    def __init__(
        self,
        fu_config: Optional[Dict[str, dict]] = None,
        enforce_offset_range: Optional[bool] = None,
        call_target_relative: Optional[bool] = None,
    ):
        self.fu_config = fu_config if fu_config is not None else global_config.FU_CONFIG
        self.enforce_offset_range = (
            global_config.ENFORCE_OFFSET_RANGE if enforce_offset_range is None else enforce_offset_range
        )
        self.call_target_relative = (
            global_config.CALL_TARGET_RELATIVE if call_target_relative is None else call_target_relative
        )

        self.memory = Memory()
        self.register_file = RegisterFile()

        self.loaded_instructions: Dict[int, Instruction] = {}  # Map address to Instruction
        self.program_counter: int = 0  # Word address
        self.current_cycle: int = 0

        self.branch_pending: bool = False
        self.jump_pending: bool = False
        self.issued_after_branch: int = 0
        self.branch_instructions: int = 0
        self.branch_mispredictions: int = 0

        self.issued_tracker: List[TrackerEntry] = []
        self.executed_tracker: List[TrackerEntry] = []
        self.written_back_tracker: List[TrackerEntry] = []

        # CDB state for the current cycle: (index of broadcasting RS, value)
        self.cdb_broadcast_this_cycle: Optional[Tuple[int, int]] = None
        self.cdb_broadcasts: int = 0
        self._next_seq = 0

        self.reservation_stations: List[ReservationStation] = []
        self._initialize_reservation_stations()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _initialize_reservation_stations(self):
        """Creates rs_count stations per kind in self.fu_config, named "<Prefix><n>"."""
        for fu_name, fu_cfg in self.fu_config.items():
            kind = unit_kind_of(fu_name)
            prefix = global_config.STATION_NAMES.get(kind.value, kind.value.title())
            for i in range(fu_cfg["rs_count"]):
                self.add_reservation_station(
                    f"{prefix}{i + 1}",
                    kind,
                    fu_cfg["latency"],
                    address_latency=fu_cfg.get("address_latency"),
                    memory_latency=fu_cfg.get("memory_latency"),
                )

    def add_reservation_station(
        self,
        name: str,
        fu_type: Union[UnitKind, OpCode, str],
        latency: int,
        address_latency: Optional[int] = None,
        memory_latency: Optional[int] = None,
    ) -> ReservationStation:
        """Adds a station to the pool. Allocation scans stations in the order they were added."""
        if self.current_cycle > 0:
            raise RuntimeError("Reservation stations cannot be added once the simulation has started.")
        if any(rs.name == name for rs in self.reservation_stations):
            raise ValueError(f"Duplicate reservation station name: '{name}'")
        rs = ReservationStation(
            name,
            unit_kind_of(fu_type),
            latency,
            address_latency=address_latency,
            memory_latency=memory_latency,
            index=len(self.reservation_stations),
        )
        self.reservation_stations.append(rs)
        logger.info("Added reservation station %s (%s, %d cycles)", name, rs.fu_type.name, latency)
        return rs

    def _check_address(self, address: int, what: str) -> None:
        if not (0 <= address < MEMORY_SIZE_WORDS):
            raise ValueError(f"{what} {address} is out of bounds (0-{MEMORY_SIZE_WORDS - 1}).")

    def _jump_target(self, instruction: Instruction, address: int) -> Optional[int]:
        """PC a BEQ (when taken) or CALL placed at address moves to. RET targets are only known at run time."""
        if instruction.opcode == OpCode.BEQ:
            return address + 1 + instruction.offset
        if instruction.opcode == OpCode.CALL:
            if self.call_target_relative:
                return address + 1 + instruction.label
            return instruction.label
        return None

    def add_instruction(self, instruction: Instruction, address: int) -> int:
        """Encodes instruction into memory at address and returns the encoded word."""
        self._check_address(address, "Instruction address")
        if self.enforce_offset_range and instruction.offset is not None and not (OFFSET_MIN <= instruction.offset <= OFFSET_MAX):
            raise ValueError(
                f"Offset of '{instruction}' must be between {OFFSET_MIN} and {OFFSET_MAX}"
            )
        target = self._jump_target(instruction, address)
        if target is not None and not (0 <= target < MEMORY_SIZE_WORDS):
            raise ValueError(
                f"Target {target} of '{instruction}' at address {address} is out of bounds (0-{MEMORY_SIZE_WORDS - 1})."
            )
        word = instruction.encode()
        self.memory.write_word(address, word)
        self.loaded_instructions[address] = instruction
        return word

    def add_instructions(self, instructions: Sequence[Instruction], address: int) -> None:
        """Places instructions at consecutive addresses starting at address."""
        if instructions:
            self._check_address(address, "Instruction address")
            self._check_address(address + len(instructions) - 1, "Instruction address")
        for offset, instruction in enumerate(instructions):
            self.add_instruction(instruction, address + offset)

    def add_data(self, values: Iterable[int], address: int) -> None:
        """Writes raw data words starting at address."""
        self.memory.write_block(address, values)

    def set_start_address(self, address: int) -> None:
        self._set_pc(address)

    def set_register(self, reg_idx: int, value: int) -> None:
        self.register_file.write_physical_reg(reg_idx, value)

    def set_registers(self, values: Sequence[int]) -> None:
        self.register_file.load(values)

    def load_program(
        self,
        instructions: Sequence[Instruction],
        initial_pc: int = 0,
        initial_memory_data: Optional[List[Tuple[int, int]]] = None,
        initial_register_data: Optional[List[Tuple[int, int]]] = None,
    ) -> None:
        """
        Loads a program starting at initial_pc, sets the PC there, and seeds
        memory and registers with (address, value) / (register, value) pairs.
        """
        self.add_instructions(instructions, initial_pc)
        for address, value in initial_memory_data or ():
            self.memory.write_word(address, value)
        for reg_idx, value in initial_register_data or ():
            self.register_file.write_physical_reg(reg_idx, value)
        self.set_start_address(initial_pc)
        logger.info("Program loaded. %d instructions. PC set to %d.", len(instructions), initial_pc)

    def _set_pc(self, address: int) -> None:
        self._check_address(address, "Program counter")
        self.program_counter = address

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def pc(self) -> int:
        return self.program_counter

    @property
    def registers(self) -> Tuple[int, ...]:
        return self.register_file.snapshot()

    @property
    def register_status(self) -> Tuple[Optional[str], ...]:
        """Name of the station each register waits on, or None when committed."""
        return tuple(
            None if tag is None else self.reservation_stations[tag].name
            for tag in self.register_file.rat
        )

    @property
    def stations(self) -> Tuple[ReservationStation, ...]:
        return tuple(self.reservation_stations)

    @property
    def issued(self) -> Tuple[TrackerEntry, ...]:
        return tuple(self.issued_tracker)

    @property
    def executed(self) -> Tuple[TrackerEntry, ...]:
        return tuple(self.executed_tracker)

    @property
    def written_back(self) -> Tuple[TrackerEntry, ...]:
        return tuple(self.written_back_tracker)

    @property
    def misprediction_rate(self) -> float:
        if not self.branch_instructions:
            return 0.0
        return self.branch_mispredictions / self.branch_instructions

    def station(self, name: str) -> ReservationStation:
        for rs in self.reservation_stations:
            if rs.name == name:
                return rs
        raise KeyError(name)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _get_free_rs(self, fu_type: UnitKind) -> Optional[ReservationStation]:
        """Finds the first free RS of the given kind, in configuration order."""
        for rs in self.reservation_stations:
            if rs.fu_type == fu_type and not rs.busy:
                return rs
        return None

    def _pending_branches(self) -> List[ReservationStation]:
        branches = [rs for rs in self.reservation_stations if rs.busy and rs.fu_type == UnitKind.BEQ]
        return sorted(branches, key=lambda rs: rs.seq)

    def _speculation_barrier(self) -> Optional[int]:
        """Issue number of the oldest unresolved branch; anything issued later is speculative."""
        branches = self._pending_branches()
        return branches[0].seq if branches else None

    def _record(self, tracker: List[TrackerEntry], rs: ReservationStation) -> None:
        tracker.append(
            TrackerEntry(rs.instruction, self.current_cycle, rs.name, rs.index, rs.original_pc, rs.seq)
        )

    def _advance_cycles(self):
        for rs in self.reservation_stations:
            rs.advance()

    def _fetch(self) -> Optional[Instruction]:
        """The instruction at the PC, or None for an empty word or an undefined opcode."""
        if self.program_counter >= MEMORY_SIZE_WORDS:
            return None
        word = self.memory.read_word(self.program_counter)
        if word == 0:
            return None
        instr = Instruction.decode(word)
        if instr.get_fu_type() is None:
            logger.debug("Cycle %d: Undefined opcode in word %#06x at PC %d", self.current_cycle, word, self.program_counter)
            return None
        return instr

    def _issue_stage(self):
        """Issues at most one instruction from memory at the PC."""
        if self.jump_pending:
            logger.debug("Cycle %d: Issue blocked, jump pending", self.current_cycle)
            return
        instr = self._fetch()
        if instr is None:
            return  # Nothing to fetch

        rs = self._get_free_rs(instr.get_fu_type())
        if rs is None:
            logger.debug("Cycle %d: No free %s station for %s, stalling", self.current_cycle, instr.get_fu_type().name, instr)
            return

        op = instr.opcode
        regs = self.register_file
        vj = qj = vk = qk = None
        imm_or_addr = None
        if op == OpCode.LOAD:
            vj, qj = regs.read_operand(instr.rB)
            imm_or_addr = instr.offset
        elif op == OpCode.STORE:
            vj, qj = regs.read_operand(instr.rB)  # base
            vk, qk = regs.read_operand(instr.rA)  # value to store
            imm_or_addr = instr.offset
        elif op == OpCode.BEQ:
            vj, qj = regs.read_operand(instr.rA)
            vk, qk = regs.read_operand(instr.rB)
            imm_or_addr = instr.offset
        elif op == OpCode.CALL:
            imm_or_addr = instr.label
            if self.call_target_relative:
                imm_or_addr += self.program_counter + 1
        elif op == OpCode.RET:
            vj, qj = regs.read_operand(LINK_REGISTER)
            imm_or_addr = vj
        else:
            vj, qj = regs.read_operand(instr.rB)
            vk, qk = regs.read_operand(instr.rC)

        seq = self._next_seq
        self._next_seq += 1
        rs.issue(instr, self.program_counter, seq, vj, qj, vk, qk, imm_or_addr)
        if op == OpCode.BEQ:
            rs.rat_checkpoint = regs.checkpoint()
        if instr.destination is not None:
            regs.set_rat_tag(instr.destination, rs.index)

        self._record(self.issued_tracker, rs)
        logger.debug("Cycle %d: Issued %s (PC %d) to %s", self.current_cycle, instr, self.program_counter, rs.name)
        self.program_counter += 1
        if self.branch_pending:
            self.issued_after_branch += 1

        if op == OpCode.BEQ:
            self.branch_pending = True
            self.branch_instructions += 1
        elif op in (OpCode.CALL, OpCode.RET):
            self.jump_pending = True

    def _memory_hazard(self, rs: ReservationStation, against: Tuple[UnitKind, ...]) -> Optional[ReservationStation]:
        """
        Finds an older in-flight memory operation that rs has to wait for: same
        effective address or an address not computed yet. A LOAD that already
        read memory no longer conflicts.
        """
        for other in self.reservation_stations:
            if other is rs or not other.busy or other.fu_type not in against:
                continue
            if other.seq > rs.seq:
                continue
            if other.fu_type == UnitKind.LOAD and other.result is not None:
                continue
            if not other.address_ready or other.A == rs.A:
                return other
        return None

    def _execute_stage(self):
        """Runs every non-speculative station whose timer has reached a threshold, in issue order."""
        barrier = self._speculation_barrier()
        in_flight = sorted((rs for rs in self.reservation_stations if rs.busy), key=lambda rs: rs.seq)
        for rs in in_flight:
            if not rs.busy:
                continue  # Squashed earlier in this stage
            if barrier is not None and rs.seq > barrier:
                continue
            kind = rs.fu_type
            if kind in (UnitKind.LOAD, UnitKind.STORE):
                self._execute_memory(rs)
            elif kind == UnitKind.BEQ:
                if rs.latency_elapsed():
                    self._resolve_branch(rs)
            elif kind == UnitKind.CALL_RET:
                if rs.latency_elapsed():
                    self._resolve_jump(rs)
            elif rs.result is None and rs.latency_elapsed():
                rs.result = self._compute_result(rs)
                self._record(self.executed_tracker, rs)
                logger.debug("Cycle %d: %s (%s) finished execution. Result: %d", self.current_cycle, rs.name, rs.instruction, rs.result)

    def _execute_memory(self, rs: ReservationStation):
        if not rs.address_ready and rs.Qj is None and rs.address_phase_done():
            rs.A = (rs.Vj + rs.A) & _WORD_MASK
            rs.address_ready = True
            logger.debug("Cycle %d: %s effective address %d", self.current_cycle, rs.name, rs.A)

        if not rs.address_ready or rs.result is not None or not rs.latency_elapsed():
            return

        if rs.fu_type == UnitKind.LOAD:
            blocker = self._memory_hazard(rs, (UnitKind.STORE,))
            if blocker is not None:
                logger.debug("Cycle %d: %s waits for older %s (address %d)", self.current_cycle, rs.name, blocker.name, rs.A)
                return
            rs.result = self.memory.read_word(rs.A)
            self._record(self.executed_tracker, rs)
            logger.debug("Cycle %d: %s read %d from address %d", self.current_cycle, rs.name, rs.result, rs.A)
        else:
            blocker = self._memory_hazard(rs, (UnitKind.LOAD, UnitKind.STORE))
            if blocker is not None:
                logger.debug("Cycle %d: %s waits for older %s (address %d)", self.current_cycle, rs.name, blocker.name, rs.A)
                return
            self.memory.write_word(rs.A, rs.Vk)
            logger.debug("Cycle %d: %s wrote %d to address %d", self.current_cycle, rs.name, rs.Vk, rs.A)
            self._release_without_cdb(rs)

    def _compute_result(self, rs: ReservationStation) -> int:
        op = rs.op_type
        if op == OpCode.ADD:
            result = rs.Vj + rs.Vk
        elif op == OpCode.SUB:
            result = rs.Vj - rs.Vk
        elif op == OpCode.NOR:
            result = ~(rs.Vj | rs.Vk)
        elif op == OpCode.MUL:
            result = rs.Vj * rs.Vk
        else:
            raise RuntimeError(f"{rs.name} cannot compute a result for {op}")
        return result & _WORD_MASK  # Normalize to 16-bit

    def _release_without_cdb(self, rs: ReservationStation):
        """STORE/BEQ/CALL/RET finish in Execute: they are recorded as executed and written back at once."""
        self._record(self.executed_tracker, rs)
        self._record(self.written_back_tracker, rs)
        rs.clear()

    def _resolve_branch(self, rs: ReservationStation):
        taken = rs.Vj == rs.Vk
        if taken:
            target = rs.original_pc + 1 + rs.A
            self._set_pc(target)
            self.branch_mispredictions += 1

            # Everything issued after the branch was on the wrong path
            keep = next(i for i, entry in enumerate(self.issued_tracker) if entry.seq == rs.seq) + 1
            squashed_entries = len(self.issued_tracker) - keep
            del self.issued_tracker[keep:]
            for other in self.reservation_stations:
                if other.busy and other.seq > rs.seq:
                    logger.debug("Cycle %d: Squashed %s (%s)", self.current_cycle, other.name, other.instruction)
                    other.clear()
            self.register_file.restore(rs.rat_checkpoint)
            logger.debug(
                "Cycle %d: %s taken, PC -> %d, %d speculative instructions dropped",
                self.current_cycle, rs.name, target, squashed_entries,
            )
        else:
            logger.debug("Cycle %d: %s not taken, continuing at PC %d", self.current_cycle, rs.name, self.program_counter)

        self._release_without_cdb(rs)

        remaining = self._pending_branches()
        self.branch_pending = bool(remaining)
        if remaining:
            oldest_seq = remaining[0].seq
            self.issued_after_branch = sum(1 for entry in self.issued_tracker if entry.seq > oldest_seq)
        else:
            self.issued_after_branch = 0
        self.jump_pending = any(
            other.busy and other.fu_type == UnitKind.CALL_RET for other in self.reservation_stations
        )

    def _resolve_jump(self, rs: ReservationStation):
        if rs.op_type == OpCode.CALL:
            self.register_file.write_physical_reg(LINK_REGISTER, rs.original_pc + 1)
            self.register_file.clear_rat_tag(LINK_REGISTER)
        else:
            rs.A = rs.Vj
        self._set_pc(rs.A)
        self.jump_pending = False
        logger.debug("Cycle %d: %s jumps to %d", self.current_cycle, rs.instruction, rs.A)
        self._release_without_cdb(rs)

    def _write_back_stage(self):
        """Broadcasts the oldest finished, non-speculative result on the CDB."""
        barrier = self._speculation_barrier()
        broadcasting_rs: Optional[ReservationStation] = None
        for entry in self.issued_tracker:
            if barrier is not None and entry.seq > barrier:
                break
            rs = self.reservation_stations[entry.station_index]
            if rs.seq == entry.seq and rs.fu_type in _CDB_PRODUCERS and rs.ready_for_cdb():
                broadcasting_rs = rs
                break
        if broadcasting_rs is None:
            return

        rs = broadcasting_rs
        value = rs.result
        self.cdb_broadcast_this_cycle = (rs.index, value)
        self.cdb_broadcasts += 1
        logger.debug("Cycle %d: CDB Broadcasting: %s with result %d (%s)", self.current_cycle, rs.name, value, rs.instruction)

        # A pending branch checkpoint may still name this station for a register
        # that a younger speculative instruction has renamed since.
        write_through = set()
        for branch in self._pending_branches():
            saved = list(branch.rat_checkpoint)
            for reg_idx, tag in enumerate(saved):
                if tag == rs.index:
                    write_through.add(reg_idx)
                    saved[reg_idx] = None
            branch.rat_checkpoint = tuple(saved)
        self.register_file.on_broadcast(rs.index, value, write_through=write_through)

        for other_rs in self.reservation_stations:
            if other_rs is not rs and other_rs.snoop_cdb(rs.index, value):
                logger.debug("Cycle %d: %s snooped %s with value %d", self.current_cycle, other_rs.name, rs.name, value)

        self._record(self.written_back_tracker, rs)
        rs.clear()

    def step(self):
        """Simulates a single clock cycle."""
        self.cdb_broadcast_this_cycle = None
        self._advance_cycles()
        self._issue_stage()
        self._execute_stage()
        self._write_back_stage()
        self.current_cycle += 1

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def is_simulation_complete(self) -> bool:
        """No station is busy, nothing is pending, and there is no instruction left at the PC."""
        if self.branch_pending or self.jump_pending:
            return False
        if any(rs.busy for rs in self.reservation_stations):
            return False
        return self._fetch() is None

    def run_simulation(self, max_cycles: int = 1000) -> int:
        """Steps until completion or max_cycles. Returns the number of cycles simulated."""
        logger.info("Starting simulation...")
        while not self.is_simulation_complete() and self.current_cycle < max_cycles:
            self.step()

        if self.is_simulation_complete():
            logger.info("Simulation completed in %d cycles.", self.current_cycle)
        else:
            logger.warning("Simulation stopped at max cycles: %d", max_cycles)
        return self.current_cycle

    def print_timing_results(self):
        """Prints the instruction timing table."""
        from .report import format_timing_table
        print(format_timing_table(self))


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG, format="%(message)s")

    processor = Processor(fu_config={})
    processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 2)
    processor.add_reservation_station("Add2", UnitKind.ADD_SUB, 2)
    processor.add_reservation_station("Mul1", UnitKind.MUL, 3)
    processor.add_reservation_station("Load1", UnitKind.LOAD, 2, address_latency=1, memory_latency=1)
    processor.add_reservation_station("Store1", UnitKind.STORE, 2, address_latency=1, memory_latency=1)

    processor.set_registers([0, 10, 5, 3, 2, 1, 7, 100])
    processor.add_data([42], 100)
    processor.load_program([
        Instruction(OpCode.LOAD, rA=1, rB=7, offset=0),
        Instruction(OpCode.ADD, rA=2, rB=1, rC=3),
        Instruction(OpCode.ADD, rA=4, rB=5, rC=6),
        Instruction(OpCode.MUL, rA=5, rB=2, rC=4),
        Instruction(OpCode.STORE, rA=5, rB=7, offset=1),
    ])
    processor.run_simulation(max_cycles=50)

    print(processor.register_file)
    print("Memory[100..101]:", processor.memory.dump(100, 2))
    processor.print_timing_results()
