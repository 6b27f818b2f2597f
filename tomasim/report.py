"""
Read-only views of a Processor for display: table rows for stations,
registers, memory and instruction timing, plus run statistics. Nothing here
changes engine state.
"""
from collections import Counter
from typing import Any, Dict, List, Optional


def _station_name(processor, tag: Optional[int]) -> Optional[str]:
    return None if tag is None else processor.reservation_stations[tag].name


def station_rows(processor) -> List[Dict[str, Any]]:
    rows = []
    for rs in processor.reservation_stations:
        rows.append({
            "Name": rs.name,
            "FU Type": rs.fu_type.name,
            "Busy": rs.busy,
            "Op": rs.op_type.name if rs.op_type else None,
            "Instruction": str(rs.instruction) if rs.instruction else None,
            "Vj": rs.Vj,
            "Vk": rs.Vk,
            "Qj": _station_name(processor, rs.Qj),
            "Qk": _station_name(processor, rs.Qk),
            "A": rs.A,
            "Result": rs.result,
            "PC": rs.original_pc,
            "Cycles Needed": rs.latency,
            "Cycles Passed": rs.cycles_passed,
        })
    return rows


def register_rows(processor) -> List[Dict[str, Any]]:
    status = processor.register_status
    return [
        {"Register": f"R{i}", "Value": value, "Status": status[i]}
        for i, value in enumerate(processor.registers)
    ]


def memory_rows(processor, start_address: int = 0, num_words: int = 16) -> List[Dict[str, Any]]:
    return [{"Address": addr, "Value": value} for addr, value in processor.memory.dump(start_address, num_words)]


def loop_addresses(processor) -> List[int]:
    """Addresses that were issued more than once (loop bodies, re-executed subroutines)."""
    counts = Counter(entry.pc for entry in processor.issued_tracker)
    return sorted(addr for addr, count in counts.items() if count > 1)


def timing_rows(processor, address: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    One row per surviving Issued entry, ordered by address and then issue cycle.
    Execute and writeback cycles are matched by issue number, so repeated
    issues of the same address are kept apart.

    Args:
        address: If given, only rows for instructions fetched from this address.
    """
    executed = {entry.seq: entry.cycle for entry in processor.executed_tracker}
    written_back = {entry.seq: entry.cycle for entry in processor.written_back_tracker}
    repeated = set(loop_addresses(processor))

    entries = [e for e in processor.issued_tracker if address is None or e.pc == address]
    entries.sort(key=lambda e: (e.pc, e.cycle))

    rows = []
    for entry in entries:
        wb_cycle = written_back.get(entry.seq)
        rows.append({
            "Address": entry.pc,
            "Instruction": str(entry.instruction),
            "Reservation Station": entry.station,
            "Issued": entry.cycle,
            "Executed": executed.get(entry.seq),
            "Written Back": wb_cycle,
            "Latency": None if wb_cycle is None else wb_cycle - entry.cycle,
            "Repeated": entry.pc in repeated,
        })
    return rows


def summary(processor) -> Dict[str, Any]:
    return {
        "Cycle": processor.current_cycle,
        "PC": processor.program_counter,
        "Branch Pending": processor.branch_pending,
        "Jump Pending": processor.jump_pending,
        "Branches": processor.branch_instructions,
        "Mispredictions": processor.branch_mispredictions,
        "Misprediction Rate": processor.misprediction_rate,
        "Issued": len(processor.issued_tracker),
        "Executed": len(processor.executed_tracker),
        "Written Back": len(processor.written_back_tracker),
    }


def format_timing_table(processor) -> str:
    """The instruction timing log as fixed-width text."""
    def cell(value):
        return "-" if value is None else str(value)

    lines = [
        "--- Instruction Timing Results ---",
        f"{'Addr':>5} | {'Instruction':<22} | {'RS':<8} | {'Issue':>6} | {'Exec':>6} | {'WB':>6} | {'Latency':>7}",
        "-" * 80,
    ]
    for row in timing_rows(processor):
        lines.append(
            f"{row['Address']:>5} | {row['Instruction']:<22} | {row['Reservation Station']:<8} | "
            f"{cell(row['Issued']):>6} | {cell(row['Executed']):>6} | {cell(row['Written Back']):>6} | "
            f"{cell(row['Latency']):>7}"
        )
    lines.append(
        f"Branch mispredictions: {processor.branch_mispredictions}/{processor.branch_instructions}"
    )
    lines.append("--- End of Timing Results ---")
    return "\n".join(lines)
