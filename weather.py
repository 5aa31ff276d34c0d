"""
Weather widget data for the Tim Akademik dashboard.

Sources are tried in order: wttr.in (no key), OpenWeatherMap (only with
WEATHER_API_KEY), then a rough estimate from latitude and hour of day.
"""
import logging
import math
import os
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_LATITUDE = -6.2088
DEFAULT_LONGITUDE = 106.8456
WEATHER_TIMEOUT = float(os.getenv('WEATHER_TIMEOUT', 5))

WTTR_URL = 'https://wttr.in/{lat},{lon}?format=j1'
OWM_URL = 'https://api.openweathermap.org/data/2.5/weather'

# wttr.in (WWO) condition codes -> OpenWeatherMap style icon codes
WTTR_ICONS = {
    '113': '01d', '116': '02d', '119': '04d', '122': '04d', '143': '50d',
    '176': '10d', '179': '13d', '182': '13d', '185': '13d', '200': '11d',
    '227': '13d', '230': '13d', '248': '50d', '260': '50d', '263': '09d',
    '266': '09d', '281': '13d', '284': '13d', '293': '10d', '296': '10d',
    '299': '10d', '302': '10d', '305': '10d', '308': '10d', '311': '13d',
    '314': '13d', '317': '13d', '320': '13d', '323': '13d', '326': '13d',
    '329': '13d', '332': '13d', '335': '13d', '338': '13d', '350': '13d',
    '353': '10d', '356': '10d', '359': '10d', '362': '13d', '365': '13d',
    '368': '13d', '371': '13d', '374': '13d', '377': '13d', '386': '11d',
    '389': '11d', '392': '11d', '395': '11d',
}


def weather_icon(code) -> str:
    """Icon for a wttr.in code, falling back to OpenWeatherMap code ranges."""
    code = str(code).strip()
    if code in WTTR_ICONS:
        return WTTR_ICONS[code]
    try:
        number = int(code)
    except ValueError:
        return '01d'
    if 200 <= number < 300:
        return '11d'
    if 300 <= number < 400:
        return '09d'
    if 500 <= number < 600:
        return '10d'
    if 600 <= number < 700:
        return '13d'
    if 700 <= number < 800:
        return '50d'
    return {800: '01d', 801: '02d', 802: '03d', 803: '04d', 804: '04d'}.get(number, '01d')


def estimate_weather(lat: float, lon: float = DEFAULT_LONGITUDE, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now()
    hour = now.hour
    abs_lat = abs(lat)

    if abs_lat > 60:
        base = 5
    elif abs_lat > 45:
        base = 15
    elif abs_lat > 30:
        base = 25
    else:
        base = 30
    temperature = round(base + math.sin((hour - 6) * math.pi / 12) * 5)

    if abs_lat < 10:
        if 6 <= hour <= 18:
            description, icon = 'cerah', '01d'
        else:
            description, icon = 'berawan', '02n'
    elif abs_lat < 30:
        description, icon = 'berawan', '03d'
    else:
        description, icon = 'mendung', '04d'

    return {
        'temperature': temperature,
        'description': description,
        'icon': icon,
        'location': 'Jakarta, Indonesia',
        'humidity': 70,
        'windSpeed': 2.5,
        'source': 'estimate',
    }


def _from_wttr(client: httpx.Client, lat, lon) -> Dict[str, Any]:
    response = client.get(WTTR_URL.format(lat=lat, lon=lon))
    response.raise_for_status()
    data = response.json()
    current = data['current_condition'][0]
    area = data['nearest_area'][0]
    return {
        'temperature': round(float(current['temp_C'])),
        'description': current['weatherDesc'][0]['value'].lower(),
        'icon': weather_icon(current['weatherCode']),
        'location': f"{area['areaName'][0]['value']}, {area['country'][0]['value']}",
        'humidity': int(current['humidity']),
        'windSpeed': float(current['windspeedKmph']) / 3.6,
        'source': 'wttr.in',
    }


def _from_openweathermap(client: httpx.Client, lat, lon, api_key) -> Dict[str, Any]:
    response = client.get(OWM_URL, params={
        'lat': lat, 'lon': lon, 'appid': api_key, 'units': 'metric', 'lang': 'id',
    })
    response.raise_for_status()
    data = response.json()
    return {
        'temperature': round(data['main']['temp']),
        'description': data['weather'][0]['description'],
        'icon': data['weather'][0]['icon'],
        'location': f"{data['name']}, {data['sys']['country']}",
        'humidity': data['main']['humidity'],
        'windSpeed': data['wind']['speed'],
        'source': 'openweathermap',
    }


def fetch_weather(lat=None, lon=None, api_key=None, transport=None, now=None) -> Dict[str, Any]:
    lat = DEFAULT_LATITUDE if lat is None else lat
    lon = DEFAULT_LONGITUDE if lon is None else lon
    api_key = api_key if api_key is not None else os.getenv('WEATHER_API_KEY')

    with httpx.Client(timeout=WEATHER_TIMEOUT, transport=transport) as client:
        try:
            return _from_wttr(client, lat, lon)
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.info("[Weather] wttr.in failed: %s", e)

        if api_key:
            try:
                return _from_openweathermap(client, lat, lon, api_key)
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
                logger.info("[Weather] OpenWeatherMap failed: %s", e)

    return estimate_weather(lat, lon, now)
