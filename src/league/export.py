"""
CSV and Excel exports of tournament results.

An export is a list of sections, each a (title, headers, rows) triple. CSV
writes the sections one after another under their title; Excel writes one
worksheet per section.
"""
import csv
import io
import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .time_attack import COURSES, time_to_ms

Section = Tuple[str, Sequence[str], Sequence[Sequence]]

CSV_MIMETYPE = 'text/csv; charset=utf-8'
XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
MIN_COLUMN_WIDTH = 15
MAX_SHEET_TITLE = 31


def format_time(ms: Optional[int]) -> str:
    """83456 -> '1:23.45' (centiseconds); None -> '-'."""
    if ms is None:
        return '-'
    minutes, rest = divmod(int(ms), 60000)
    seconds, millis = divmod(rest, 1000)
    return f'{minutes}:{seconds:02d}.{millis // 10:02d}'


def build_filename(tournament_name: str, event_code: str, extension: str = 'csv',
                   now: Optional[datetime] = None) -> str:
    safe_name = re.sub(r'[^A-Za-z0-9_-]+', '_', tournament_name).strip('_') or 'tournament'
    stamp = (now or datetime.now()).strftime('%Y%m%d-%H%M%S')
    return f'{safe_name}_{event_code.upper()}_{stamp}.{extension}'


def _cell(value):
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'Yes' if value else 'No'
    return value


def to_csv(sections: List[Section]) -> str:
    """Sections as CSV text, prefixed with a BOM so Excel reads it as UTF-8."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    for i, (title, headers, rows) in enumerate(sections):
        if i:
            writer.writerow([])
        writer.writerow([title])
        writer.writerow(headers)
        for row in rows:
            writer.writerow([_cell(v) for v in row])
    return '\ufeff' + buffer.getvalue()


def to_xlsx(sections: List[Section]) -> bytes:
    """Sections as an .xlsx workbook, one sheet each."""
    workbook = Workbook()
    workbook.remove(workbook.active)
    header_fill = PatternFill(start_color='1F4E78', end_color='1F4E78', fill_type='solid')

    for title, headers, rows in sections:
        sheet = workbook.create_sheet(title=title[:MAX_SHEET_TITLE])
        for column, header in enumerate(headers, start=1):
            cell = sheet.cell(row=1, column=column, value=header)
            cell.font = Font(bold=True, color='FFFFFF')
            cell.alignment = Alignment(horizontal='center', vertical='center')
            cell.fill = header_fill
            sheet.column_dimensions[get_column_letter(column)].width = max(len(str(header)), MIN_COLUMN_WIDTH)
        for row_index, row in enumerate(rows, start=2):
            for column, value in enumerate(row, start=1):
                sheet.cell(row=row_index, column=column, value=_cell(value))
        sheet.freeze_panes = 'A2'

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _nickname(player) -> str:
    return player.nickname if player is not None else 'TBD'


def qualification_section(config, qualifications, title: str = 'QUALIFICATIONS') -> Section:
    headers = ['Player', 'Nickname'] + [label for label, _ in config.export_columns]
    rows = []
    for q in qualifications:
        player = q.player
        rows.append([player.name if player else '', _nickname(player)]
                    + [getattr(q, attr) for _, attr in config.export_columns])
    return title, headers, rows


def matches_section(config, matches, title: str = 'MATCHES') -> Section:
    field1, field2 = config.score_fields
    headers = ['Match #', 'Stage', 'Round', 'Player 1', 'Player 2',
               field1.capitalize(), field2.capitalize(), 'Completed']
    rows = []
    for m in matches:
        rows.append([m.match_number, m.stage, m.round or '', _nickname(m.player1), _nickname(m.player2),
                     getattr(m, field1), getattr(m, field2), m.completed])
    return title, headers, rows


def time_attack_section(entries, title: str = 'TIME ATTACK') -> Section:
    headers = ['Rank', 'Player', 'Nickname', 'Stage', 'Total Time', 'Points', 'Lives', 'Eliminated'] + COURSES
    rows = []
    for e in entries:
        times = e.times or {}
        rows.append([e.rank, e.player.name if e.player else '', _nickname(e.player), e.stage,
                     format_time(e.total_time), e.qualification_points, e.lives, e.eliminated]
                    + [format_time(time_to_ms(times.get(c))) if times.get(c) else '' for c in COURSES])
    return title, headers, rows
