"""
Default configuration values for echo_transfer.

All volumes are in nanolitres unless the name says otherwise.
"""

# Instrument
DEFAULT_DROPLET_SIZE_NL = 2.5
DEFAULT_MAX_TRANSFER_VOLUME_NL = 500.0

# Plates
DEFAULT_SOURCE_PLATE_SIZE = "384"
DEFAULT_DESTINATION_PLATE_SIZE = "384"
INTERMEDIATE_PLATE_SIZE = "384"
ALLOWED_SOURCE_PLATE_SIZES = ("384", "1536")
ALLOWED_DESTINATION_PLATE_SIZES = ("96", "384", "1536")

# Dead volumes
LOW_DEAD_VOLUME_NL = 2500.0
HIGH_DEAD_VOLUME_NL = 15000.0
DEAD_VOLUME_THRESHOLD_NL = 15000.0

# Liquids
DEFAULT_SOLVENT = "DMSO"
ASSAY_BUFFER = "Assay Buffer"

# Unit conversion at the input boundary
UL_TO_NL = 1000.0

# Generated barcodes
INTERMEDIATE_BARCODE_PREFIX = "IntPlate_"
DESTINATION_BARCODE_PREFIX = "DestPlate_"

# Logging
DEFAULT_LOG_LEVEL = "INFO"
