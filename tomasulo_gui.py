import streamlit as st

from tomasim import report
from tomasim.config import FU_CONFIG
from tomasim.instruction import Instruction, OpCode
from tomasim.processor import Processor

st.set_page_config(page_title="Tomasulo Simulator", layout="wide")
st.title("Tomasulo Algorithm Simulator (Educational GUI)")

# --- Session State Initialization ---
if 'processor' not in st.session_state:
    st.session_state.processor = None
    st.session_state.program = []
    st.session_state.memory_init = []
    st.session_state.sim_finished = False

# --- Sidebar: Hardware Config ---
st.sidebar.header("Hardware Configuration")
fu_config = {}
for fu, vals in FU_CONFIG.items():
    rs = st.sidebar.number_input(f"{fu} RS Count", min_value=1, value=vals['rs_count'], key=f"rs_{fu}")
    lat = st.sidebar.number_input(f"{fu} Latency", min_value=1, value=vals['latency'], key=f"lat_{fu}")
    fu_config[fu] = {"rs_count": int(rs), "latency": int(lat)}
    if "address_latency" in vals:
        addr_lat = st.sidebar.number_input(
            f"{fu} Address Latency", min_value=0, max_value=int(lat),
            value=min(vals['address_latency'], int(lat)), key=f"addr_{fu}",
        )
        fu_config[fu]["address_latency"] = int(addr_lat)
call_relative = st.sidebar.checkbox("CALL label is PC-relative", value=False)

# --- Program Input ---
st.header("1. Build Program")
col_op, col_a, col_b, col_c, col_imm, col_add = st.columns(6)
opcode = OpCode[col_op.selectbox("Opcode", [op.name for op in OpCode])]
fields = {}
if opcode in (OpCode.LOAD, OpCode.STORE, OpCode.BEQ):
    fields["rA"] = col_a.number_input("rA", 0, 7, 0)
    fields["rB"] = col_b.number_input("rB", 0, 7, 0)
    fields["offset"] = col_imm.number_input("Offset", -16, 15, 0)
elif opcode == OpCode.CALL:
    fields["label"] = col_imm.number_input("Label", -64, 63, 0)
elif opcode != OpCode.RET:
    fields["rA"] = col_a.number_input("rA", 0, 7, 0)
    fields["rB"] = col_b.number_input("rB", 0, 7, 0)
    fields["rC"] = col_c.number_input("rC", 0, 7, 0)
if col_add.button("Add Instruction"):
    st.session_state.program.append(Instruction(opcode, **{k: int(v) for k, v in fields.items()}))

start_address = st.number_input("Start Address", min_value=0, max_value=65535, value=0)
for i, instr in enumerate(st.session_state.program):
    st.text(f"{start_address + i:>5}: {instr}  ({instr.encode():#06x})")
if st.button("Clear Program"):
    st.session_state.program = []

st.subheader("Initial Memory")
mem_col_addr, mem_col_val, mem_col_add = st.columns(3)
mem_addr = mem_col_addr.number_input("Address", min_value=0, max_value=65535, value=100)
mem_val = mem_col_val.number_input("Value", min_value=0, max_value=65535, value=0)
if mem_col_add.button("Add Data"):
    st.session_state.memory_init.append((int(mem_addr), int(mem_val)))
st.write(st.session_state.memory_init)

st.subheader("Initial Registers")
reg_cols = st.columns(8)
initial_registers = [0] + [
    int(reg_cols[i].number_input(f"R{i}", min_value=0, max_value=65535, value=0, key=f"reg_{i}"))
    for i in range(1, 8)
]

# --- Simulation Controls ---
st.header("2. Simulation Controls")
col1, col2, col3, col4 = st.columns(4)
if col1.button("Initialize/Reset"):
    processor = Processor(fu_config=fu_config, call_target_relative=call_relative)
    processor.set_registers(initial_registers)
    try:
        processor.load_program(
            st.session_state.program,
            initial_pc=int(start_address),
            initial_memory_data=st.session_state.memory_init,
        )
    except ValueError as e:
        st.error(f"Cannot load program: {e}")
    else:
        st.session_state.processor = processor
        st.session_state.sim_finished = False
        st.success("Simulation initialized.")

processor = st.session_state.processor
if col2.button("Step") and processor and not st.session_state.sim_finished:
    processor.step()
    st.session_state.sim_finished = processor.is_simulation_complete()

if col3.button("Run to Completion") and processor and not st.session_state.sim_finished:
    processor.run_simulation(max_cycles=1000)
    st.session_state.sim_finished = processor.is_simulation_complete()

if col4.button("Reset State"):
    st.session_state.processor = None
    st.session_state.program = []
    st.session_state.memory_init = []
    st.session_state.sim_finished = False
    processor = None

# --- Display State ---
if processor:
    stats = report.summary(processor)
    st.subheader(f"Cycle: {stats['Cycle']}  PC: {stats['PC']}")
    st.write(
        f"Branch Mispredictions: {stats['Mispredictions']}/{stats['Branches']}"
        + ("  (Branch Pending)" if stats["Branch Pending"] else "")
        + ("  (Jump Pending)" if stats["Jump Pending"] else "")
    )

    st.write("### Reservation Stations")
    st.dataframe(report.station_rows(processor))

    st.write("### Register File")
    st.dataframe(report.register_rows(processor))

    st.write("### Memory")
    mem_start = st.number_input("Dump from address", min_value=0, max_value=65535, value=0)
    st.dataframe(report.memory_rows(processor, int(mem_start), 40))

    st.write("### Instruction Timing")
    loops = report.loop_addresses(processor)
    address_filter = st.selectbox("Filter by address", ["All"] + sorted({e.pc for e in processor.issued}))
    rows = report.timing_rows(processor, None if address_filter == "All" else address_filter)
    st.dataframe(rows)
    if loops:
        st.caption(f"Loop Detection: {len(loops)} instructions issued multiple times")

    if st.session_state.sim_finished:
        st.success("Simulation finished.")
