"""Bulk asset import from CSV or Excel files.

Rows are created one at a time through the registry. A bad row is reported
and skipped; only a file that cannot be read at all fails the whole import.
"""
import csv
import io
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy import func

from asset_tracker import db
from asset_tracker.errors import AssetTrackerError, ImportFileError, ValidationError
from asset_tracker.models import AssetStatus, User
from asset_tracker.services import registry

logger = logging.getLogger(__name__)

HEADER_ALIASES = {
    'asset name': 'name',
    'name': 'name',
    'category': 'category',
    'subcategory': 'subcategory',
    'sub category': 'subcategory',
    'type': 'type',
    'asset type': 'type',
    'location': 'location',
    'status': 'status',
    'serial number': 'serial_number',
    'serial no': 'serial_number',
    'serial': 'serial_number',
    'purchase date': 'purchase_date',
    'purchase price': 'purchase_price',
    'price': 'purchase_price',
    'warranty': 'warranty',
    'assigned to': 'assigned_to',
    'assigned to username': 'assigned_to',
    'assigned to name': 'assigned_to',
    'assigned': 'assigned_to',
}
REQUIRED_COLUMNS = ('name', 'category', 'type', 'location')
COLUMN_TITLES = {'name': 'Asset Name', 'category': 'Category', 'type': 'Type', 'location': 'Location'}
SUPPORTED_EXTENSIONS = ('.csv', '.xlsx', '.xlsm')


@dataclass
class ImportReport:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)
    created_ids: list = field(default_factory=list)

    def fail(self, position, message):
        self.failed += 1
        self.errors.append(f"Row {position}: {message}")

    def warn(self, position, message):
        self.errors.append(f"Row {position}: warning: {message}")

    def to_dict(self):
        return {
            'processed': self.processed,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'errors': list(self.errors),
            'created_ids': list(self.created_ids),
        }


def normalize_header(value):
    text = re.sub(r'[\s_\-]+', ' ', str(value or '')).strip().lower()
    return text.rstrip('*').strip()


def _cell(value):
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (datetime, date, int, float)):
        return value
    return str(value).strip()


def _map_rows(raw_rows):
    if not raw_rows:
        raise ImportFileError("The import file is empty", field='file')
    headers = [HEADER_ALIASES.get(normalize_header(h)) for h in raw_rows[0]]
    missing = [COLUMN_TITLES[c] for c in REQUIRED_COLUMNS if c not in headers]
    if missing:
        raise ImportFileError(f"Missing required columns: {', '.join(missing)}", field='file')

    rows = []
    for raw in raw_rows[1:]:
        values = {}
        for idx, cell in enumerate(raw):
            key = headers[idx] if idx < len(headers) else None
            if key and key not in values:
                values[key] = _cell(cell)
        if all(v == '' for v in values.values()):
            values = {}
        rows.append(values)
    return rows


def _read_csv(data):
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8-sig')
        except UnicodeDecodeError:
            raise ImportFileError("The CSV file is not valid UTF-8 text", field='file')
    try:
        return list(csv.reader(io.StringIO(data)))
    except csv.Error as e:
        raise ImportFileError(f"The CSV file could not be parsed: {e}", field='file')


def _read_xlsx(data):
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, ValueError, OSError):
        raise ImportFileError("The spreadsheet could not be opened", field='file')
    try:
        sheet = workbook.active
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def read_rows(stream, filename):
    """Read an uploaded file into per-row dicts keyed by field name.

    Blank rows come back as empty dicts so row positions match the file.
    """
    extension = os.path.splitext(filename or '')[1].lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise ImportFileError("Upload a .csv or .xlsx file", field='file')
    data = stream.read()
    if extension == '.csv':
        raw_rows = _read_csv(data)
    else:
        if isinstance(data, str):
            raise ImportFileError("The spreadsheet could not be opened", field='file')
        raw_rows = _read_xlsx(data)
    return _map_rows(raw_rows)


def find_user_by_username(username):
    user = User.query.filter_by(username=username).first()
    if user is None:
        user = User.query.filter(func.lower(User.username) == username.lower()).first()
    return user


def _row_fields(row, position, report):
    fields = {k: v for k, v in row.items() if k != 'assigned_to'}
    if not str(fields.get('category', '')).strip():
        raise ValidationError("Category is required", field='category')

    username = str(row.get('assigned_to') or '').strip()
    if not username:
        return fields
    user = find_user_by_username(username)
    if user is not None:
        fields['custodian_id'] = user.id
        return fields

    report.warn(position, f"user '{username}' not found; asset created unassigned")
    status = fields.get('status')
    if status and AssetStatus.canonical(status) is AssetStatus.IN_USE:
        fields['status'] = AssetStatus.AVAILABLE.value
    return fields


def import_rows(rows, principal):
    principal.require_admin()
    report = ImportReport()
    for position, row in enumerate(rows, start=1):
        if not row:
            continue
        report.processed += 1
        warnings_before = len(report.errors)
        try:
            fields = _row_fields(row, position, report)
            asset = registry.create_asset(fields, principal)
        except AssetTrackerError as e:
            del report.errors[warnings_before:]
            report.fail(position, e.message)
            continue
        except Exception:
            db.session.rollback()
            del report.errors[warnings_before:]
            logger.exception("Import row %d could not be stored", position)
            report.fail(position, "could not be saved")
            continue
        report.succeeded += 1
        report.created_ids.append(asset.id)

    logger.info("Import by %s: %d processed, %d created, %d failed",
                principal.name, report.processed, report.succeeded, report.failed)
    return report


def import_file(stream, filename, principal):
    return import_rows(read_rows(stream, filename), principal)
