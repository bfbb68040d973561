import json
import logging
import math
import re
import time

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from flask import current_app

from errors import TransientNetworkError, ValidationError
from models import ParkingLot

log = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371e3
CURRENT_LOCATION = 'CURRENT_LOCATION'

PROMPT = """From the text "{query}", extract the starting location (origin) and the ending location (destination). Your response MUST be a JSON object.
- If the user specifies where they are starting from, return: {{"origin": "STARTING_LOCATION", "destination": "ENDING_LOCATION"}}
- If the user does NOT specify a starting location, return: {{"origin": "CURRENT_LOCATION", "destination": "ENDING_LOCATION"}}

Example 1: "I am at Quepem and want to go to Navelim" -> {{"origin": "Quepem", "destination": "Navelim"}}
Example 2: "Show me parking near Margao" -> {{"origin": "CURRENT_LOCATION", "destination": "Margao"}}"""

TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.ResourceExhausted,
    ConnectionError,
    TimeoutError,
)


def get_model():
    api_key = current_app.config.get('GEMINI_API_KEY')
    if not api_key:
        return None
    genai.configure(api_key=api_key)
    return genai.GenerativeModel(current_app.config['GEMINI_MODEL'])


def _generate(model, prompt):
    retries = current_app.config['GEMINI_MAX_RETRIES']
    backoff = current_app.config['GEMINI_BACKOFF_SECONDS']
    for attempt in range(retries + 1):
        try:
            return model.generate_content(prompt).text
        except TRANSIENT_ERRORS as e:
            log.warning('Gemini attempt %d/%d failed: %s', attempt + 1, retries + 1, e)
            if attempt < retries:
                time.sleep(backoff * (2 ** attempt))
    raise TransientNetworkError('Query parser is unavailable')


def extract_locations(text):
    """Pull {"origin", "destination"} out of model output, or None if unusable."""
    if not text:
        return None
    match = re.search(r'\{[\s\S]*\}', text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None

    destination = str(parsed.get('destination') or '').strip()
    if not destination:
        return None
    origin = str(parsed.get('origin') or '').strip() or CURRENT_LOCATION
    return {'origin': origin, 'destination': destination}


def parse_search_query(query, model=None):
    query = (query or '').strip()
    if not query:
        raise ValidationError('Search query is required')

    fallback = {'origin': CURRENT_LOCATION, 'destination': query, 'source': 'fallback'}
    model = model or get_model()
    if model is None:
        return fallback

    try:
        text = _generate(model, PROMPT.format(query=query))
    except TransientNetworkError:
        log.warning('Falling back to raw query as destination: %r', query)
        return fallback
    except Exception:
        log.exception('Gemini query parsing failed')
        return fallback

    locations = extract_locations(text)
    if locations is None:
        log.info('Could not parse AI response, using defaults')
        return fallback
    locations['source'] = 'model'
    return locations


def distance_m(lat1, lon1, lat2, lon2):
    # Haversine
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def find_lots_near(latitude, longitude, radius_m=None):
    """Lots within radius_m metres of a point, nearest first. No radius means every lot."""
    results = []
    for lot in ParkingLot.query.all():
        distance = distance_m(latitude, longitude, lot.latitude, lot.longitude)
        if radius_m is None or distance <= radius_m:
            results.append((lot, distance))
    results.sort(key=lambda item: item[1])
    log.info('Found %d parking lots within %sm of (%s, %s)', len(results), radius_m, latitude, longitude)
    return results
