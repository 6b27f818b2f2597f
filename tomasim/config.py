# tomasim Machine Configuration

# General Configuration
NUM_REGISTERS = 8  # R0-R7, R0 is always 0
MEMORY_SIZE_WORDS = 65536  # 128KB / 2 bytes per word = 65k words
WORD_SIZE_BITS = 16
LINK_REGISTER = 1  # CALL writes the return address here, RET jumps to it

# Functional Unit Configuration
# You can override this dictionary at runtime using the set_fu_config() function.
# Each entry specifies the number of reservation stations (rs_count) and latency (cycles).
# Latency is the total cycles needed for the operation. LOAD/STORE also give the
# part of it spent computing the effective address (address_latency).

FU_CONFIG = {
    "LOAD":     {"rs_count": 2, "latency": 6, "address_latency": 2},   # 2 (address) + 4 (memory read)
    "STORE":    {"rs_count": 2, "latency": 6, "address_latency": 2},   # 2 (address) + 4 (memory write)
    "BEQ":      {"rs_count": 2, "latency": 1},
    "CALL_RET": {"rs_count": 1, "latency": 1},
    "ADD_SUB":  {"rs_count": 4, "latency": 2},
    "NOR":      {"rs_count": 2, "latency": 1},
    "MUL":      {"rs_count": 2, "latency": 10},
}

# Display prefix for stations built from FU_CONFIG ("Load1", "Add3", ...)
STATION_NAMES = {
    "LOAD": "Load",
    "STORE": "Store",
    "BEQ": "BEQ",
    "CALL_RET": "CallRet",
    "ADD_SUB": "Add",
    "NOR": "Nor",
    "MUL": "Mul",
}

# Reject offsets outside -16..15 when building instructions. When False the
# encoder keeps only the low 5 bits.
ENFORCE_OFFSET_RANGE = True

# CALL jumps to the label as an absolute address. When True the label is
# taken relative to the instruction after the CALL.
CALL_TARGET_RELATIVE = False

def set_fu_config(new_config: dict):
    """
    Override the global FU_CONFIG at runtime.
    Example usage:
        import tomasim.config as config
        config.set_fu_config({ ... })
    """
    global FU_CONFIG
    FU_CONFIG = new_config
