DEBUG = False # if true, scripts log at DEBUG level

SAMPLING_RATE = 44100 # default sampling rate, Hz, must be integer

# band presets: start markers identify the QR version, end markers close a cycle,
# data grid holds 2**CHUNK_BITS tones spaced DATA_GRID_STEP apart
BANDS = {
    'mobile': {
        'start_markers': {1: 14000, 2: 14200, 3: 14400, 4: 14600, 5: 14800},
        'end_markers':   {1: 14100, 2: 14300, 3: 14500, 4: 14700, 5: 14900},
        'data_grid_base': 15200,
    },
    'ultrasonic': {
        'start_markers': {1: 21000, 2: 21200, 3: 21400, 4: 21600, 5: 21800},
        'end_markers':   {1: 21100, 2: 21300, 3: 21500, 4: 21700, 5: 21900},
        'data_grid_base': 22200,
    },
}
DEFAULT_BAND = 'mobile'

VERSIONS = range(1, 6) # supported QR versions
CHUNK_BITS = 6 # matrix bits carried per tone
DATA_GRID_STEP = 30.0 # Hz between neighbouring data tones
DATA_GRID_BINS = 2 ** CHUNK_BITS
FREQ_TOLERANCE = 10.0 # +- Hz a detected tone may sit from its grid point

# timing, ms
CHUNK_DURATION_MS = 60
MARKER_DURATION_MS = 100
GAP_DURATION_MS = 300 # silence after each cycle

# tone shaping
ENVELOPE_FRACTION = 0.1 # attack/release share of each tone
ENVELOPE_MAX_SAMPLES = 500

# transmitter config
RELATIVE_AMPLITUDE = 0.1 # embed level relative to the carrier peak (-20 dB)
FLOOR_AMPLITUDE = 0.02 # never embed quieter than this
DEFAULT_CYCLES = 3
QR_ERROR_CORRECTION = 'M'

# scanner
SCAN_WINDOW = 0.1 # s
SCAN_STEP = 0.05 # s, half-window overlap
THRESHOLD_FRACTION = 0.3 # of the strongest marker observed
DETECTION_FLOOR = 0.002 # absolute minimum marker strength
MIN_CANDIDATE_SEPARATION = 0.8 # s, closer hits are merged
VERSION_AMBIGUITY_RATIO = 1.5 # runner-up marker within this ratio goes to a vote
MAX_CANDIDATES = 5
CHECK_INTERVAL = 32 # scan windows between deadline checks

# alignment
ALIGN_COARSE_RANGE = 0.1 # s
ALIGN_COARSE_STEP = 0.005
ALIGN_FINE_RANGE = 0.01
ALIGN_FINE_STEP = 0.001

# demodulator
CHUNK_SAFETY_MARGIN = 0.010 # s trimmed from each edge of a chunk window
CORRUPTION_CEILING = 0.3 # fraction of corrupted columns that aborts a candidate
END_MARKER_BONUS = 0.2 # confidence multiplier gain when the end marker is confirmed

# emergency fallback
EMERGENCY_WINDOW = 0.02
EMERGENCY_STEP = 0.01
EMERGENCY_THRESHOLD = 1e-6
EMERGENCY_CANDIDATES = 3

DECODE_TIMEOUT_MS = 30000

# alternate detectors (boundary votes)
CORRELATION_RMS_GATE = 1e-4
CORRELATION_THRESHOLD = 0.01
CORRELATION_RATIO = 1.1
RELAXED_RMS_GATE = 1e-5
RELAXED_THRESHOLD = 0.001
RELAXED_RATIO = 1.05
DFT_THRESHOLD = 1e-4
DFT_RATIO = 1.1
ZERO_CROSSING_FACTOR = 0.9
ZERO_CROSSING_MIN = 10

# QR rasterization for the external reader
QR_SCALES = [10, 6] # pixels per module, tried in order
QR_QUIET_ZONE = 4 # modules

# live listening
LIVE_INTERVAL = 0.5 # s between analysis passes
LIVE_BUFFER_SECONDS = 10.0 # rolling buffer length
LIVE_MIN_SECONDS = 5.0 # don't analyse until this much audio arrived
LIVE_TIMEOUT_MS = 4000 # budget for one live pass
FRAMES_PER_BUFFER = 1024

# container
CONTAINER_MAGIC = b'UI67'
CONTAINER_VERSION = 1
