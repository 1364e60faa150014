DEFAULT_SCHEMA = {
    "session_id": "session_id",
    "latitude": "latitude",
    "longitude": "longitude",
    "timestamp": "timestamp",
    "datetime": "datetime",
    "start_timestamp": "start_timestamp",
    "end_timestamp": "end_timestamp",
    "duration": "duration",
    "speed": "speed",
    "ha": "ha",
    "tz_offset": "tz_offset"}

SEC_PER_UNIT = {'s': 1, 'min': 60, 'h': 3_600, 'd': 86_400, 'w': 604_800}

EARTH_RADIUS_METERS = 6371000
# At the equator 1 degree is roughly 111 km, so 50 m is about 0.00045 degrees
METERS_PER_DEGREE = 111_111

# =============================================================================
# ADAPTIVE SAMPLING
# =============================================================================

# (minimum stationary seconds, interval multiplier, label)
DEFAULT_FREQUENCY_TIERS = [
    (0, 1.0, "Normal"),
    (60, 2.0, "Reduced"),
    (180, 4.0, "Low"),
    (300, 8.0, "Very Low"),
    (600, 15.0, "Minimal"),
    (900, 30.0, "Ultra Low"),
]

# slack on the emission spacing so timer jitter does not suppress a due fix
EMISSION_SLACK = 0.9

DEFAULT_SAMPLER_PARAMS = {
    "base_interval": 60.0,
    "min_accuracy": 100.0,
    "movement_threshold": 20.0,
    "smart_tracking": True,
}

# =============================================================================
# PLACE DETECTION
# =============================================================================

DEFAULT_PLACE_PARAMS = {
    "max_speed": 1.0,             # m/s, below this a sample is stationary
    "min_dwell": 120.0,           # s
    "min_visits": 2,
    "grid_cell_size": 50.0,       # m
    "min_stationary_points": 3,
    "min_radius": 25.0,           # m, floor on cluster spread
    "min_place_radius": 30.0,     # m, floor on the radius of new places
    "geocoding_interval": 0.25,   # s between reverse geocoding requests
}

# live lookups use a slightly larger catchment than the grid cell
ARRIVAL_RADIUS_FACTOR = 1.5
DEPARTURE_RADIUS_FACTOR = 2.0

# =============================================================================
# CATEGORIZATION
# =============================================================================

NAME_MATCH_CONFIDENCE = 0.85
USER_CONFIRMED_CONFIDENCE = 1.0
NEW_PLACE_CONFIDENCE = 0.5

NIGHT_HOURS = (23, 7)          # [23:00, 07:00)
WORK_HOURS = (9, 17)           # weekdays only
MORNING_HOURS = (5, 9)

DEFAULT_CLASSIFIER_PARAMS = {
    "home_night_ratio": 0.5,
    "home_min_dwell": 4 * 3_600,
    "home_confidence_cap": 0.9,
    "work_ratio": 0.6,
    "work_min_dwell": 2 * 3_600,
    "work_confidence_cap": 0.85,
    "gym_min_dwell": 30 * 60,
    "gym_max_dwell": 2 * 3_600,
    "gym_confidence": 0.5,
    "other_confidence": 0.3,
}

CATEGORY_KEYWORDS = {
    'home': [],
    'work': ['office', 'corporate', 'headquarters'],
    'cafe': ['coffee', 'starbucks', 'cafe', "peet's", 'dunkin', 'espresso', 'latte'],
    'restaurant': ['restaurant', 'grill', 'kitchen', 'diner', 'bistro', 'eatery', 'tavern',
                   'pizzeria', 'burger', 'taco', 'sushi', 'thai', 'chinese', 'mexican', 'indian'],
    'shopping': ['target', 'walmart', 'costco', 'mall', 'store', 'shop', 'outlet', 'best buy',
                 'home depot', 'lowes', 'ikea', 'ross', 'tjmaxx', 'marshalls', 'nordstrom', 'macy'],
    'gym': ['gym', 'fitness', 'yoga', 'pilates', 'crossfit', 'planet fitness', '24 hour',
            'equinox', 'orangetheory', 'la fitness'],
    'gas_station': ['shell', 'chevron', 'gas', '76', 'arco', 'mobil', 'exxon', 'bp', 'texaco',
                    'valero', 'costco gas', 'fuel'],
    'grocery': ['grocery', 'safeway', 'whole foods', 'trader joe', 'kroger', 'publix',
                'albertsons', 'vons', 'ralphs', 'sprouts', 'aldi', 'food', 'market'],
    'medical': ['hospital', 'clinic', 'medical', 'doctor', 'urgent care', 'pharmacy', 'cvs',
                'walgreens', 'health', 'dental', 'veterinar'],
    'entertainment': ['theater', 'theatre', 'cinema', 'movie', 'amc', 'regal', 'museum',
                      'gallery', 'concert', 'stadium', 'arena', 'bowling', 'arcade'],
    'transit': ['station', 'airport', 'terminal', 'bus stop', 'metro', 'bart', 'subway',
                'train', 'amtrak'],
    'park': ['park', 'beach', 'trail', 'nature', 'garden', 'reserve', 'forest', 'lake',
             'recreation'],
    'other': [],
}

PLACE_SORT_KEYS = ['recent', 'visits', 'time', 'name', 'category']

PLACE_TABLE_COLUMNS = [
    'id', 'latitude', 'longitude', 'radius', 'name', 'street_address', 'category',
    'confidence', 'is_confirmed', 'visit_count', 'created_at', 'last_visited_at']

VISIT_TABLE_COLUMNS = ['place_id', 'arrival_time', 'departure_time']

DEFAULT_CRS = "EPSG:4326"
