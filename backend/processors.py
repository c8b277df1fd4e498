import io
import logging
from datetime import date, datetime, time

import numpy as np
import pandas as pd

from errors import ParseError, UnsupportedFileTypeError
from type_inference import detect_column_type

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_ROW_LIMIT = 1000
DEFAULT_PREVIEW_ROW_LIMIT = 1000


def _cell_to_text(value):
    """Normalise a parsed cell to text, or None when it is absent/empty."""
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, (bool, np.bool_)):
        return 'true' if value else 'false'
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        if np.isnan(value):
            return None
        if float(value).is_integer():
            return str(int(value))
        return repr(float(value))
    if isinstance(value, datetime):
        if pd.isna(value):
            return None
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=' ')
    if isinstance(value, (date, time)):
        return value.isoformat()
    if pd.isna(value):
        return None
    return str(value)


def _split_header(raw):
    # The first row holds the names as written, duplicates included
    names = [_cell_to_text(v) or '' for v in raw.iloc[0]]
    frame = raw.iloc[1:].reset_index(drop=True)
    frame.columns = names
    return frame


class FileProcessor:
    """Turns raw file bytes into an ordered schema, a row count and a preview."""

    file_type = None

    def __init__(self, sample_row_limit=DEFAULT_SAMPLE_ROW_LIMIT, preview_row_limit=DEFAULT_PREVIEW_ROW_LIMIT):
        self.sample_row_limit = sample_row_limit
        self.preview_row_limit = preview_row_limit

    def read_frame(self, file_bytes):
        raise NotImplementedError

    def load(self, file_bytes):
        """Parse the file into a DataFrame whose cells are text or None."""
        if not file_bytes:
            raise ParseError(f'Empty {self.file_type} file')

        frame = self.read_frame(file_bytes)
        names = [str(name) for name in frame.columns]
        cells = {
            position: pd.Series([_cell_to_text(v) for v in frame.iloc[:, position]], dtype=object)
            for position in range(len(names))
        }
        frame = pd.DataFrame(cells, columns=range(len(names)))
        frame.columns = names
        return frame

    def process(self, file_bytes):
        frame = self.load(file_bytes)
        sample = frame.head(self.sample_row_limit)

        columns = []
        for position, name in enumerate(frame.columns):
            samples = sample.iloc[:, position].tolist()
            columns.append({
                'name': name,
                'type': detect_column_type(samples),
                'nullable': any(v is None for v in samples),
            })

        preview = frame.head(self.preview_row_limit)
        rows = [dict(zip(frame.columns, values)) for values in preview.itertuples(index=False, name=None)]

        logger.info("Parsed %s file: %d columns, %d rows", self.file_type, len(columns), len(frame))
        return {
            'columns': columns,
            'row_count': int(len(frame)),
            'rows': rows,
        }

    def to_warehouse_csv(self, file_bytes):
        """CSV bytes (header row first) in the form the warehouse loads."""
        frame = self.load(file_bytes)
        return frame.to_csv(index=False).encode('utf-8')


class CsvProcessor(FileProcessor):
    file_type = 'csv'

    def read_frame(self, file_bytes):
        try:
            width = len(pd.read_csv(io.BytesIO(file_bytes), nrows=0, encoding='utf-8-sig').columns)
            long_rows = []

            def drop_extra_fields(fields):
                long_rows.append(len(fields))
                return fields[:width]

            raw = pd.read_csv(
                io.BytesIO(file_bytes),
                header=None,
                names=list(range(width)),
                dtype=str,
                keep_default_na=False,
                index_col=False,
                encoding='utf-8-sig',
                skip_blank_lines=True,
                engine='python',
                on_bad_lines=drop_extra_fields,
            )
        except pd.errors.EmptyDataError as e:
            raise ParseError('CSV file has no header row') from e
        except pd.errors.ParserError as e:
            raise ParseError(f'Malformed CSV file: {e}') from e
        except UnicodeDecodeError as e:
            raise ParseError('CSV file is not valid UTF-8') from e

        if long_rows:
            logger.warning("Dropped extra fields from %d CSV rows longer than the %d-column header",
                           len(long_rows), width)
        return _split_header(raw)

    def to_warehouse_csv(self, file_bytes):
        # The warehouse reads the source bytes directly and ignores extra fields.
        return file_bytes


class ExcelProcessor(FileProcessor):
    file_type = 'excel'

    def read_frame(self, file_bytes):
        try:
            raw = pd.read_excel(io.BytesIO(file_bytes), sheet_name=0, header=None, dtype=object)
        except Exception as e:
            raise ParseError(f'Error processing Excel file: {e}') from e
        if raw.empty:
            raise ParseError('Excel sheet has no header row')
        return _split_header(raw).dropna(how='all')


PROCESSORS = {
    'csv': CsvProcessor,
    'excel': ExcelProcessor,
}

FILE_TYPE_ALIASES = {
    'text/csv': 'csv',
    'xlsx': 'excel',
    'xls': 'excel',
}


def normalize_file_type(file_type):
    key = (file_type or '').strip().lower()
    return FILE_TYPE_ALIASES.get(key, key)


def get_processor(file_type, **limits):
    """Return the processor instance for a file type."""
    processor_class = PROCESSORS.get(normalize_file_type(file_type))
    if processor_class is None:
        raise UnsupportedFileTypeError(f'Unsupported file type: {file_type}')
    return processor_class(**limits)
