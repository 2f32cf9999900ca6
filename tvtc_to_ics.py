#!/usr/bin/env python3
"""
Tri-Valley Triathlon Club Calendar to ICS Converter

This script downloads the club's monthly workout calendar, pulls every workout
out of the day cells of the main table and writes an RFC 5545 calendar file.
"""

import argparse
import os
import sys
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

import requests
from bs4 import BeautifulSoup, ParserRejectedMarkup
import pytz

# Configure logging
logging.basicConfig(
    level=os.getenv('TVTC_LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CALENDAR_URL = "http://www.trivalleytriclub.com/calendar"
TIMEZONE = "America/Los_Angeles"
EVENT_DURATION = timedelta(minutes=90)
DEFAULT_OUT_FILE = "tvtc.ical"

# RFC 5545 Sec 3.3.5, UTC form
ICS_TIME_FORMAT = "%Y%m%dT%H%M%SZ"
UID_DOMAIN = "trivalleytriclub.com"

CAPTION_SELECTOR = 'div#main > table > caption'
ROW_SELECTOR = 'div#main > table > tbody > tr, div#main > table > tr'

MONTH_NAMES = [
    'January', 'February', 'March', 'April', 'May', 'June',
    'July', 'August', 'September', 'October', 'November', 'December'
]

# A workout occupies ten lines of a day cell's text
BLOCK_SIZE = 10
TITLE_LINE = 2
LOCATION_LINES = (3, 5, 7)
TIME_LINE = 9


class CalendarError(Exception):
    """Base class for everything that stops a calendar from being produced"""


class FetchError(CalendarError):
    pass


class NormalizeError(CalendarError):
    pass


class StructureError(CalendarError):
    """The page no longer has the table layout we know how to read"""


class MalformedWorkoutError(CalendarError):
    """A single workout block could not be decoded"""


@dataclass(frozen=True)
class Workout:
    title: str
    location: str
    start: datetime
    end: datetime


def load_source(path: str) -> bytes:
    """Read a previously downloaded calendar page from disk"""
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise FetchError(f"Unable to open test file {path}: {e}") from e


def normalize_html(raw: bytes) -> BeautifulSoup:
    """
    Run the page through lxml's forgiving parser and re-parse the repaired
    markup. The club page leaves tags unclosed, which trips up the selectors
    when fed straight to html.parser.
    """
    try:
        repaired = BeautifulSoup(raw, 'lxml')
    except ParserRejectedMarkup as e:
        raise NormalizeError(f"Unable to parse calendar page: {e}") from e

    return BeautifulSoup(repaired.decode(), 'html.parser')


def parse_month(soup: BeautifulSoup) -> int:
    """Extract the month number from the caption inside the main table"""
    caption = soup.select_one(CAPTION_SELECTOR)
    if caption is None:
        raise StructureError("failed to find month")

    month = caption.get_text().split(' ')[0].strip()
    if month not in MONTH_NAMES:
        raise StructureError(f"invalid month: `{month}`")

    return MONTH_NAMES.index(month) + 1


def resolve_year(month: int, now: datetime) -> int:
    """The caption has no year; a December calendar seen in January is last year's"""
    if month == 12 and now.month == 1:
        return now.year - 1
    return now.year


def parse_day_of_month(row) -> int:
    """Find the number at the end of the first cell of a row of day headers"""
    cell = row.find('td', recursive=False)
    if cell is None:
        raise StructureError("failed to find day")

    text = cell.get_text()
    parts = text.strip().split(' ')
    try:
        return int(parts[-1])
    except ValueError:
        raise StructureError(f"failed to parse day: `{text}`") from None


def parse_time_spec(spec: str) -> Tuple[int, int]:
    """Parse a time like '6:00 AM' into a 24-hour (hour, minute) pair"""
    parts = spec.strip().split(' ')
    if len(parts) != 2:
        raise MalformedWorkoutError(f"unexpected number of parts in time: `{spec}`")

    hourmins = parts[0].split(':')
    if len(hourmins) != 2:
        raise MalformedWorkoutError(f"unable to parse time: `{parts[0]}`")
    try:
        hour = int(hourmins[0])
        minute = int(hourmins[1])
    except ValueError:
        raise MalformedWorkoutError(f"unable to parse time: `{parts[0]}`") from None

    meridiem = parts[1]
    if meridiem == 'PM':
        if hour != 12:
            hour += 12
    elif meridiem == 'AM':
        if hour == 12:
            hour = 0
    else:
        raise MalformedWorkoutError(f"expected AM/PM and not: `{meridiem}`")

    return hour, minute


def parse_workout_block(lines: List[str], day: date, tz, duration: timedelta) -> Workout:
    """
    Decode one ten line workout block.

    Line 2 holds the title, lines 3, 5 and 7 the address and line 9 the start
    time. The start is built from the calendar date in ``tz`` so that daylight
    saving changes land on the right UTC instant.
    """
    if len(lines) < BLOCK_SIZE:
        raise MalformedWorkoutError(f"expected {BLOCK_SIZE} lines, got {len(lines)}")

    hour, minute = parse_time_spec(lines[TIME_LINE])
    try:
        local_start = tz.localize(datetime(day.year, day.month, day.day, hour, minute))
    except ValueError as e:
        raise MalformedWorkoutError(f"invalid time `{lines[TIME_LINE].strip()}`: {e}") from e

    start = local_start.astimezone(pytz.UTC)
    location = ', '.join(lines[i].strip() for i in LOCATION_LINES)

    return Workout(
        title=lines[TITLE_LINE].strip(),
        location=location.strip(),
        start=start,
        end=start + duration,
    )


def parse_workouts(text: str, day: date, tz, duration: timedelta) -> List[Workout]:
    """
    Handle all workouts for a single day cell.

    Blocks are consumed while at least eleven lines remain; the last line of
    the cell never starts a block. Any malformed block drops the whole cell.
    """
    workouts = []
    lines = text.split('\n')

    while len(lines) >= BLOCK_SIZE + 1:
        try:
            workouts.append(parse_workout_block(lines[:BLOCK_SIZE], day, tz, duration))
        except MalformedWorkoutError as e:
            logger.warning(f"Skipping workouts on {day.isoformat()}: {e}")
            return []

        # Chop off already processed workout
        lines = lines[BLOCK_SIZE:]

    return workouts


def parse_workout_row(cursor: date, row, tz, duration: timedelta) -> Tuple[List[Workout], date]:
    """
    Parse a row of workout cells, one cell per day. Returns the workouts and
    the cursor moved forward one day per cell.
    """
    workouts = []

    for cell in row.find_all('td', recursive=False):
        workouts.extend(parse_workouts(cell.get_text(), cursor, tz, duration))
        cursor += timedelta(days=1)

    return workouts, cursor


def format_ics_time(moment: datetime) -> str:
    return moment.astimezone(pytz.UTC).strftime(ICS_TIME_FORMAT)


def escape_ics_text(text: str) -> str:
    """Escape special characters for ICS format"""
    if not text:
        return ""

    # RFC 5545 escaping rules
    text = text.replace("\\", "\\\\")
    text = text.replace(";", "\\;")
    text = text.replace(",", "\\,")
    text = text.replace("\n", "\\n")
    text = text.replace("\r", "")

    return text


def write_calendar(path: str, content: str) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)


class TriValleyCalendarScraper:
    """Scrapes the Tri-Valley Triathlon Club calendar and converts it to ICS format"""

    def __init__(self):
        # Configuration from environment variables
        self.calendar_url = CALENDAR_URL
        self.timezone = os.getenv('TVTC_IANA_TZ', TIMEZONE)
        self.calendar_title = os.getenv('TVTC_CAL_TITLE', 'Tri-Valley Triathlon Club')

        self.local_tz = pytz.timezone(self.timezone)
        self.duration = EVENT_DURATION

        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
        })

        logger.debug(f"Initialized scraper with timezone: {self.timezone}")

    def fetch_calendar_page(self) -> bytes:
        """Download the calendar page, a single attempt"""
        logger.info(f"Downloading {self.calendar_url}")

        try:
            response = self.session.get(self.calendar_url)
        except requests.RequestException as e:
            raise FetchError(f"Unable to fetch calendar: {e}") from e

        if response.status_code != 200:
            raise FetchError(f"unable to fetch calendar, status code: {response.status_code}")

        logger.info(f"Fetched calendar page ({len(response.content)} bytes)")
        return response.content

    def parse_calendar(self, soup: BeautifulSoup, now: Optional[datetime] = None) -> Tuple[List[Workout], int]:
        """Extract all the workouts from the main table"""
        if now is None:
            now = datetime.now(self.local_tz)

        month = parse_month(soup)
        year = resolve_year(month, now)
        logger.info(f"Calendar shows {MONTH_NAMES[month - 1]} {year}")

        workouts = []
        cursor = None

        for i, row in enumerate(soup.select(ROW_SELECTOR)):
            if i == 0:
                day = parse_day_of_month(row)
                # Days past the end of the month roll into the next one
                cursor = date(year, month, 1) + timedelta(days=day - 1)

            if i % 2 == 1:
                found, cursor = parse_workout_row(cursor, row, self.local_tz, self.duration)
                for workout in found:
                    logger.debug(f"Found workout: {workout.title} at {workout.start.isoformat()}")
                workouts.extend(found)

        return workouts, year

    def generate_ics_content(self, workouts: List[Workout], now: Optional[datetime] = None) -> str:
        """Generate ICS calendar content from workouts"""
        dtstamp = format_ics_time(now or datetime.now(pytz.UTC))

        ics_lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:-//Tri-Valley Triathlon Club//{UID_DOMAIN}//",
            f"X-WR-CALNAME:{escape_ics_text(self.calendar_title)}",
            "CALSCALE:GREGORIAN",
            "METHOD:PUBLISH"
        ]

        for workout in workouts:
            start = format_ics_time(workout.start)
            end = format_ics_time(workout.end)
            ics_lines.extend([
                "BEGIN:VEVENT",
                "TRANSP:TRANSPARENT",
                f"DTSTART:{start}",
                f"DTEND:{end}",
                f"SUMMARY:{escape_ics_text(workout.title)}",
                f"LOCATION:{escape_ics_text(workout.location)}",
                f"UID:{start}-{end}@{UID_DOMAIN}",
                "SEQUENCE:0",
                f"DTSTAMP:{dtstamp}",
                "END:VEVENT"
            ])

        ics_lines.append("END:VCALENDAR")

        return "\n".join(ics_lines)

    def run(self, test_file: Optional[str] = None) -> str:
        """Main execution method"""
        if test_file:
            raw = load_source(test_file)
        else:
            raw = self.fetch_calendar_page()

        soup = normalize_html(raw)
        workouts, _ = self.parse_calendar(soup)

        logger.info(f"Parsed {len(workouts)} workouts")

        return self.generate_ics_content(workouts)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert the Tri-Valley Triathlon Club calendar to ICS")
    parser.add_argument('-test', '--test', dest='test', default='',
                        help="test using a predownloaded HTML file")
    parser.add_argument('-out', '--out', dest='out', default=DEFAULT_OUT_FILE,
                        help="output file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = parse_args(argv)

    try:
        scraper = TriValleyCalendarScraper()
        ics_content = scraper.run(args.test or None)

        write_calendar(args.out, ics_content)
        logger.info(f"Calendar saved to {args.out}")

        event_count = ics_content.count('BEGIN:VEVENT')
        logger.info(f"Generated calendar with {event_count} events")

        return 0

    except Exception as e:
        logger.error(f"Failed to generate calendar: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
