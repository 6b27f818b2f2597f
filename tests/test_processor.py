import unittest

from tomasim.config import MEMORY_SIZE_WORDS
from tomasim.instruction import Instruction, OpCode, UnitKind
from tomasim.processor import Processor, unit_kind_of


def ins(opcode, **fields):
    return Instruction(opcode, **fields)


def end_to_end_processor():
    processor = Processor(fu_config={})
    processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 2)
    processor.add_reservation_station("Add2", UnitKind.ADD_SUB, 2)
    processor.add_reservation_station("Mul1", UnitKind.MUL, 3)
    processor.add_reservation_station("Load1", UnitKind.LOAD, 2, address_latency=1, memory_latency=1)
    processor.add_reservation_station("Store1", UnitKind.STORE, 2, address_latency=1, memory_latency=1)
    processor.set_registers([0, 10, 5, 3, 2, 1, 7, 100])
    processor.add_data([42], 100)
    processor.load_program([
        ins(OpCode.LOAD, rA=1, rB=7, offset=0),
        ins(OpCode.ADD, rA=2, rB=1, rC=3),
        ins(OpCode.ADD, rA=4, rB=5, rC=6),
        ins(OpCode.MUL, rA=5, rB=2, rC=4),
        ins(OpCode.STORE, rA=5, rB=7, offset=1),
    ])
    return processor


def branch_processor(beq_latency=1, add_stations=2):
    processor = Processor(fu_config={})
    for i in range(add_stations):
        processor.add_reservation_station(f"Add{i + 1}", UnitKind.ADD_SUB, 1)
    processor.add_reservation_station("BEQ1", UnitKind.BEQ, beq_latency)
    processor.add_reservation_station("BEQ2", UnitKind.BEQ, beq_latency)
    return processor


class TestEndToEnd(unittest.TestCase):
    def test_program_results(self):
        processor = end_to_end_processor()
        processor.run_simulation(max_cycles=100)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.registers, (0, 42, 45, 3, 8, 360, 7, 100))
        self.assertEqual(processor.memory.read_word(101), 360)
        self.assertEqual(processor.register_status, (None,) * 8)
        self.assertEqual(processor.pc, 5)

    def test_drains_in_thirteen_cycles(self):
        processor = end_to_end_processor()
        self.assertEqual(processor.run_simulation(max_cycles=100), 13)
        self.assertEqual(len(processor.issued), 5)
        self.assertEqual(len(processor.executed), 5)
        self.assertEqual(len(processor.written_back), 5)

    def test_at_most_one_broadcast_per_cycle(self):
        processor = end_to_end_processor()
        while not processor.is_simulation_complete():
            before = processor.cdb_broadcasts
            processor.step()
            self.assertIn(processor.cdb_broadcasts - before, (0, 1))
            if processor.cdb_broadcast_this_cycle is None:
                self.assertEqual(processor.cdb_broadcasts, before)
        # LOAD, two ADDs and MUL produce values; STORE does not
        self.assertEqual(processor.cdb_broadcasts, 4)

    def test_status_table_names_busy_writers(self):
        processor = end_to_end_processor()
        while not processor.is_simulation_complete():
            processor.step()
            for reg_idx, tag in enumerate(processor.register_file.rat):
                if tag is None:
                    continue
                rs = processor.reservation_stations[tag]
                self.assertTrue(rs.busy)
                self.assertEqual(rs.instruction.destination, reg_idx)

    def test_deterministic(self):
        first = end_to_end_processor()
        second = end_to_end_processor()
        first.run_simulation()
        second.run_simulation()
        self.assertEqual(first.registers, second.registers)
        self.assertEqual(first.issued, second.issued)
        self.assertEqual(first.executed, second.executed)
        self.assertEqual(first.written_back, second.written_back)

    def test_store_needs_no_broadcast(self):
        processor = end_to_end_processor()
        processor.run_simulation()
        store_exec = [e for e in processor.executed if e.instruction.opcode == OpCode.STORE]
        store_wb = [e for e in processor.written_back if e.instruction.opcode == OpCode.STORE]
        self.assertEqual(store_exec[0].cycle, store_wb[0].cycle)


class TestIssue(unittest.TestCase):
    def test_zero_word_is_not_issued(self):
        processor = branch_processor()
        processor.step()
        self.assertEqual(processor.issued, ())
        self.assertEqual(processor.pc, 0)
        self.assertTrue(processor.is_simulation_complete())

    def test_undefined_opcode_at_pc_is_not_issued(self):
        processor = branch_processor()
        processor.add_data([0x9000], 0)
        processor.step()
        processor.step()
        self.assertEqual(processor.issued, ())
        self.assertEqual(processor.pc, 0)
        self.assertTrue(processor.is_simulation_complete())

    def test_program_ends_at_undefined_opcode(self):
        processor = branch_processor()
        processor.set_registers([0, 0, 2])
        processor.load_program([ins(OpCode.ADD, rA=1, rB=2, rC=2)])
        processor.add_data([0xF123], 1)
        processor.run_simulation(max_cycles=50)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.registers[1], 4)
        self.assertEqual(processor.pc, 1)

    def test_structural_stall(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)
        processor.set_registers([0, 1, 2, 3])
        processor.load_program([
            ins(OpCode.ADD, rA=4, rB=1, rC=2),
            ins(OpCode.ADD, rA=5, rB=2, rC=3),
        ])
        processor.step()
        processor.step()
        self.assertEqual(processor.pc, 1)
        self.assertEqual(len(processor.issued), 1)
        processor.step()
        processor.step()
        self.assertEqual(processor.pc, 2)
        self.assertEqual(processor.issued[1].station, "Add1")
        processor.run_simulation()
        self.assertEqual(processor.registers[4:6], (3, 5))

    def test_first_free_station_in_configuration_order(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("AddA", UnitKind.ADD_SUB, 5)
        processor.add_reservation_station("AddB", UnitKind.ADD_SUB, 5)
        processor.load_program([
            ins(OpCode.ADD, rA=1, rB=0, rC=0),
            ins(OpCode.ADD, rA=2, rB=0, rC=0),
        ])
        processor.step()
        processor.step()
        self.assertEqual([e.station for e in processor.issued], ["AddA", "AddB"])
        self.assertEqual(processor.register_status[1:3], ("AddA", "AddB"))

    def test_renaming_last_writer_wins(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)
        processor.add_reservation_station("Add2", UnitKind.ADD_SUB, 1)
        processor.add_reservation_station("Mul1", UnitKind.MUL, 3)
        processor.set_registers([0, 0, 2, 3, 4, 5])
        processor.load_program([
            ins(OpCode.MUL, rA=1, rB=2, rC=3),
            ins(OpCode.ADD, rA=6, rB=1, rC=0),
            ins(OpCode.ADD, rA=1, rB=4, rC=5),
        ])
        processor.run_simulation()
        # The consumer saw the MUL result, the register kept the later ADD
        self.assertEqual(processor.registers[6], 6)
        self.assertEqual(processor.registers[1], 9)

    def test_r0_is_never_written(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)
        processor.set_registers([0, 0, 4])
        processor.load_program([ins(OpCode.ADD, rA=0, rB=2, rC=2)])
        processor.step()
        self.assertIsNone(processor.register_status[0])
        processor.run_simulation()
        self.assertEqual(processor.registers[0], 0)
        self.assertEqual(len(processor.written_back), 1)

    def test_oldest_ready_result_broadcasts_first(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)
        processor.add_reservation_station("Add2", UnitKind.ADD_SUB, 1)
        processor.add_reservation_station("Mul1", UnitKind.MUL, 1)
        processor.set_registers([0, 0, 2, 3])
        processor.load_program([
            ins(OpCode.MUL, rA=1, rB=2, rC=3),
            ins(OpCode.ADD, rA=4, rB=1, rC=2),
            ins(OpCode.ADD, rA=5, rB=1, rC=3),
        ])
        processor.run_simulation()
        wb = {e.instruction.rA: e.cycle for e in processor.written_back}
        self.assertEqual((wb[4], wb[5]), (4, 5))
        self.assertEqual(processor.registers[4:6], (8, 9))


class TestMemoryOrdering(unittest.TestCase):
    def make(self, load_offset):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Load1", UnitKind.LOAD, 2, address_latency=1)
        processor.add_reservation_station("Store1", UnitKind.STORE, 4, address_latency=1)
        processor.set_registers([0, 77, 0, 50])
        processor.add_data([11, 5], 50)
        processor.load_program([
            ins(OpCode.STORE, rA=1, rB=3, offset=0),
            ins(OpCode.LOAD, rA=2, rB=3, offset=load_offset),
        ])
        return processor

    def test_load_waits_for_older_store_to_same_address(self):
        processor = self.make(0)
        processor.run_simulation()
        self.assertEqual(processor.registers[2], 77)
        load = [e for e in processor.executed if e.instruction.opcode == OpCode.LOAD][0]
        store = [e for e in processor.written_back if e.instruction.opcode == OpCode.STORE][0]
        self.assertEqual(store.cycle, 4)
        self.assertGreaterEqual(load.cycle, store.cycle)

    def test_load_from_other_address_passes_store(self):
        processor = self.make(1)
        processor.run_simulation()
        self.assertEqual(processor.registers[2], 5)
        self.assertEqual(processor.memory.read_word(50), 77)
        load = [e for e in processor.executed if e.instruction.opcode == OpCode.LOAD][0]
        store = [e for e in processor.executed if e.instruction.opcode == OpCode.STORE][0]
        self.assertLess(load.cycle, store.cycle)

    def test_effective_address_wraps(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Load1", UnitKind.LOAD, 1, address_latency=0)
        processor.set_registers([0, 0, MEMORY_SIZE_WORDS - 1])
        processor.add_data([123], 1)
        processor.load_program([ins(OpCode.LOAD, rA=1, rB=2, offset=2)], initial_pc=10)
        processor.run_simulation()
        self.assertEqual(processor.registers[1], 123)


class TestBranches(unittest.TestCase):
    def test_taken_branch_squashes_younger_instructions(self):
        processor = branch_processor(beq_latency=3)
        processor.set_registers([0, 5, 5])
        processor.load_program([
            ins(OpCode.BEQ, rA=1, rB=2, offset=2),
            ins(OpCode.ADD, rA=3, rB=1, rC=2),
            ins(OpCode.ADD, rA=4, rB=1, rC=2),
            ins(OpCode.ADD, rA=5, rB=1, rC=2),
        ])
        for _ in range(3):
            processor.step()
        self.assertTrue(processor.branch_pending)
        self.assertEqual(processor.issued_after_branch, 2)
        self.assertEqual(processor.register_status[3:5], ("Add1", "Add2"))

        processor.step()
        self.assertEqual(processor.pc, 3)
        self.assertEqual([e.instruction.opcode for e in processor.issued], [OpCode.BEQ])
        self.assertFalse(processor.branch_pending)
        self.assertEqual(processor.issued_after_branch, 0)
        self.assertEqual(processor.branch_mispredictions, 1)
        self.assertEqual(processor.register_status, (None,) * 8)
        self.assertFalse(any(rs.busy for rs in processor.stations))

        processor.run_simulation()
        self.assertEqual(processor.registers[3:6], (0, 0, 10))
        self.assertEqual(processor.misprediction_rate, 1.0)

    def test_not_taken_branch_continues(self):
        processor = branch_processor(beq_latency=3)
        processor.set_registers([0, 5, 6])
        processor.load_program([
            ins(OpCode.BEQ, rA=1, rB=2, offset=2),
            ins(OpCode.ADD, rA=3, rB=1, rC=2),
            ins(OpCode.ADD, rA=4, rB=1, rC=2),
        ])
        processor.run_simulation()
        self.assertEqual(processor.registers[3:5], (11, 11))
        self.assertEqual(len(processor.issued), 3)
        self.assertEqual(processor.branch_instructions, 1)
        self.assertEqual(processor.branch_mispredictions, 0)
        self.assertEqual(processor.misprediction_rate, 0.0)

    def test_speculative_instructions_wait_for_branch(self):
        processor = branch_processor(beq_latency=3)
        processor.set_registers([0, 5, 6])
        processor.load_program([
            ins(OpCode.BEQ, rA=1, rB=2, offset=2),
            ins(OpCode.ADD, rA=3, rB=1, rC=2),
        ])
        for _ in range(4):
            processor.step()
            self.assertFalse(any(e.instruction.opcode == OpCode.ADD for e in processor.executed))

    def test_branch_on_value_from_older_instruction(self):
        processor = branch_processor()
        processor.set_registers([0, 0, 2, 3, 5])
        processor.load_program([
            ins(OpCode.ADD, rA=1, rB=2, rC=3),
            ins(OpCode.BEQ, rA=1, rB=4, offset=1),
            ins(OpCode.ADD, rA=5, rB=2, rC=3),
            ins(OpCode.ADD, rA=6, rB=2, rC=2),
        ])
        processor.run_simulation(max_cycles=50)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.registers[1], 5)
        self.assertEqual(processor.registers[5], 0)
        self.assertEqual(processor.registers[6], 4)
        self.assertEqual(processor.branch_mispredictions, 1)

    def make_renamed_under_branch(self, r4):
        # ADD R2 (older) broadcasts after the speculative ADD R2 renamed it
        processor = branch_processor()
        processor.add_reservation_station("Mul1", UnitKind.MUL, 4)
        processor.set_registers([0, 3, 0, 0, r4, 7, 4, 5])
        processor.load_program([
            ins(OpCode.MUL, rA=3, rB=1, rC=1),
            ins(OpCode.ADD, rA=2, rB=6, rC=7),
            ins(OpCode.BEQ, rA=3, rB=4, offset=1),
            ins(OpCode.ADD, rA=2, rB=1, rC=5),
            ins(OpCode.ADD, rA=5, rB=2, rC=1),
        ])
        for _ in range(4):
            processor.step()
        # Older result committed, status entry still names the speculative writer
        self.assertEqual(processor.registers[2], 9)
        self.assertEqual(processor.register_status[2], "Add2")
        self.assertTrue(processor.branch_pending)
        return processor

    def test_older_result_survives_taken_branch(self):
        processor = self.make_renamed_under_branch(9)
        processor.run_simulation(max_cycles=50)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.branch_mispredictions, 1)
        self.assertEqual(processor.registers[2], 9)
        self.assertEqual(processor.registers[3], 9)
        self.assertEqual(processor.registers[5], 12)
        self.assertEqual(processor.register_status, (None,) * 8)

    def test_speculative_writer_wins_when_not_taken(self):
        processor = self.make_renamed_under_branch(8)
        processor.run_simulation(max_cycles=50)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.branch_mispredictions, 0)
        self.assertEqual(processor.registers[2], 10)
        self.assertEqual(processor.registers[5], 13)
        self.assertEqual(processor.register_status, (None,) * 8)

    def test_loop(self):
        processor = branch_processor(add_stations=1)
        processor.set_registers([0, 0, 1, 2])
        processor.load_program([
            ins(OpCode.ADD, rA=1, rB=1, rC=2),
            ins(OpCode.BEQ, rA=1, rB=3, offset=1),
            ins(OpCode.BEQ, rA=0, rB=0, offset=-3),
        ])
        processor.run_simulation(max_cycles=100)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.registers[1], 2)
        self.assertEqual(processor.pc, 3)
        self.assertEqual([e.pc for e in processor.issued], [0, 1, 2, 0, 1])
        self.assertEqual(processor.branch_instructions, 4)
        self.assertEqual(processor.branch_mispredictions, 2)
        self.assertEqual(processor.misprediction_rate, 0.5)

    def test_endless_loop_stops_at_max_cycles(self):
        processor = branch_processor()
        processor.load_program([ins(OpCode.BEQ, rA=0, rB=0, offset=-1)])
        self.assertEqual(processor.run_simulation(max_cycles=20), 20)
        self.assertFalse(processor.is_simulation_complete())


class TestCallRet(unittest.TestCase):
    def make(self, **kwargs):
        processor = Processor(fu_config={}, **kwargs)
        processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)
        processor.add_reservation_station("CallRet1", UnitKind.CALL_RET, 1)
        return processor

    def test_call_and_return(self):
        processor = self.make()
        processor.set_registers([0, 0, 3])
        processor.add_instruction(ins(OpCode.CALL, label=10), 0)
        processor.add_instruction(ins(OpCode.ADD, rA=3, rB=2, rC=2), 1)
        processor.add_instructions([
            ins(OpCode.ADD, rA=4, rB=2, rC=2),
            ins(OpCode.RET),
        ], 10)

        processor.step()
        self.assertTrue(processor.jump_pending)
        processor.step()
        # Issue is blocked until the CALL resolves
        self.assertEqual(len(processor.issued), 1)
        self.assertEqual(processor.pc, 10)
        self.assertEqual(processor.registers[1], 1)
        self.assertFalse(processor.jump_pending)

        processor.run_simulation(max_cycles=50)
        self.assertTrue(processor.is_simulation_complete())
        self.assertEqual(processor.registers[3:5], (6, 6))
        self.assertEqual(processor.pc, 2)
        self.assertEqual([e.pc for e in processor.issued], [0, 10, 11, 1])

    def test_ret_waits_for_link_register(self):
        processor = self.make()
        processor.add_reservation_station("Add2", UnitKind.ADD_SUB, 1)
        processor.set_registers([0, 0, 2, 3])
        processor.load_program([
            ins(OpCode.ADD, rA=1, rB=2, rC=3),
            ins(OpCode.RET),
        ])
        processor.add_instruction(ins(OpCode.ADD, rA=6, rB=2, rC=2), 5)
        processor.run_simulation(max_cycles=50)
        self.assertEqual(processor.registers[6], 4)
        self.assertEqual(processor.pc, 6)

    def test_call_target_out_of_memory_rejected_at_load(self):
        processor = self.make()
        with self.assertRaises(ValueError):
            processor.add_instruction(ins(OpCode.CALL, label=-5), 0)
        self.assertEqual(processor.memory.read_word(0), 0)
        self.assertEqual(processor.loaded_instructions, {})

        relative = self.make(call_target_relative=True)
        relative.add_instruction(ins(OpCode.CALL, label=-5), 10)
        with self.assertRaises(ValueError):
            relative.add_instruction(ins(OpCode.CALL, label=-5), 2)
        with self.assertRaises(ValueError):
            relative.add_instruction(ins(OpCode.CALL, label=63), 65500)

    def test_branch_target_out_of_memory_rejected_at_load(self):
        processor = branch_processor()
        with self.assertRaises(ValueError):
            processor.load_program([ins(OpCode.BEQ, rA=0, rB=0, offset=-5)])
        with self.assertRaises(ValueError):
            processor.add_instruction(ins(OpCode.BEQ, rA=0, rB=0, offset=1), MEMORY_SIZE_WORDS - 2)
        processor.add_instruction(ins(OpCode.BEQ, rA=0, rB=0, offset=-5), 4)

    def test_relative_call_target(self):
        processor = self.make(call_target_relative=True)
        processor.load_program([ins(OpCode.CALL, label=3)])
        processor.step()
        processor.step()
        self.assertEqual(processor.pc, 4)
        self.assertEqual(processor.registers[1], 1)


class TestConfiguration(unittest.TestCase):
    def test_default_pool(self):
        processor = Processor()
        names = [rs.name for rs in processor.stations]
        self.assertEqual(len(names), 15)
        self.assertEqual(names[:3], ["Load1", "Load2", "Store1"])
        self.assertEqual(processor.station("Load1").address_latency, 2)
        self.assertEqual(processor.station("Add4").latency, 2)
        self.assertEqual(processor.station("CallRet1").fu_type, UnitKind.CALL_RET)
        with self.assertRaises(KeyError):
            processor.station("Div1")

    def test_custom_pool(self):
        processor = Processor(fu_config={"ADD_SUB": {"rs_count": 1, "latency": 3}})
        self.assertEqual([(rs.name, rs.latency) for rs in processor.stations], [("Add1", 3)])

    def test_duplicate_station_name(self):
        processor = Processor(fu_config={})
        processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)
        with self.assertRaises(ValueError):
            processor.add_reservation_station("Add1", "MUL", 2)

    def test_no_stations_after_start(self):
        processor = Processor(fu_config={})
        processor.step()
        with self.assertRaises(RuntimeError):
            processor.add_reservation_station("Add1", UnitKind.ADD_SUB, 1)

    def test_unit_kind_names(self):
        self.assertEqual(unit_kind_of("add_sub"), UnitKind.ADD_SUB)
        self.assertEqual(unit_kind_of("SUB"), UnitKind.ADD_SUB)
        self.assertEqual(unit_kind_of(OpCode.RET), UnitKind.CALL_RET)
        with self.assertRaises(ValueError):
            unit_kind_of("DIV")

    def test_addresses_are_checked(self):
        processor = Processor(fu_config={})
        with self.assertRaises(ValueError):
            processor.set_start_address(MEMORY_SIZE_WORDS)
        with self.assertRaises(ValueError):
            processor.add_instruction(ins(OpCode.RET), -1)
        with self.assertRaises(ValueError):
            processor.add_instructions([ins(OpCode.RET)] * 2, MEMORY_SIZE_WORDS - 1)
        self.assertEqual(processor.memory.read_word(MEMORY_SIZE_WORDS - 1), 0)
        with self.assertRaises(ValueError):
            processor.add_data([1, 2], MEMORY_SIZE_WORDS - 1)

    def test_offset_policy(self):
        wide = ins(OpCode.LOAD, rA=1, rB=2, offset=20, enforce_offset_range=False)
        with self.assertRaises(ValueError):
            Processor(fu_config={}).add_instruction(wide, 0)
        processor = Processor(fu_config={}, enforce_offset_range=False)
        self.assertEqual(processor.add_instruction(wide, 0), (1 << 9) | (2 << 6) | 20)

    def test_load_program_seeds_state(self):
        processor = Processor(fu_config={})
        processor.load_program(
            [ins(OpCode.RET)],
            initial_pc=30,
            initial_memory_data=[(100, 42)],
            initial_register_data=[(3, 9)],
        )
        self.assertEqual(processor.pc, 30)
        self.assertEqual(processor.memory.read_word(30), 0x4000)
        self.assertEqual(processor.memory.read_word(100), 42)
        self.assertEqual(processor.registers[3], 9)
        self.assertEqual(processor.loaded_instructions[30], ins(OpCode.RET))

    def test_set_register(self):
        processor = Processor(fu_config={})
        processor.set_register(2, 70000)
        self.assertEqual(processor.registers[2], 70000 & 0xFFFF)
        with self.assertRaises(ValueError):
            processor.set_register(8, 1)


if __name__ == "__main__":
    unittest.main()
