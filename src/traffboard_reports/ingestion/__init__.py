from .csv_processing import (
    DataProcessingResult, process_player_data_csv, process_conversion_data_csv, create_players_from_import,
    create_conversions_from_import, process_csv_import, validate_csv_content,
)

__all__ = [
    "DataProcessingResult",
    "process_player_data_csv",
    "process_conversion_data_csv",
    "create_players_from_import",
    "create_conversions_from_import",
    "process_csv_import",
    "validate_csv_content",
]
