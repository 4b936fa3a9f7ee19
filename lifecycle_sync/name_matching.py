"""Name normalization, parsing, permutations, nicknames and similarity scoring.

Display names arrive in many shapes: "First Last", "Last, First",
"Last, First (J)" and "First Middle Last". Everything here is pure and
side-effect free so the resolver can call it in tight loops.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from rapidfuzz.distance import Levenshtein

from lifecycle_sync.models import MatchConfidence

HIGH_THRESHOLD = 0.95
MEDIUM_THRESHOLD = 0.85
DISCARD_THRESHOLD = 0.60

STRUCTURED_MATCH_SCORE = 0.95
PARTIAL_BASE_SCORE = 0.70
PARTIAL_WEIGHT = 0.20
PARTIAL_MIN_GIVEN_SIMILARITY = 0.5

# Common English nickname variants. Lookups go both directions.
_NICKNAME_TABLE = {
    "jeff": "jeffrey jeffery geoffrey geoff",
    "jeffrey": "jeff jeffery geoffrey geoff",
    "jeffery": "jeff jeffrey geoffrey geoff",
    "geoff": "geoffrey jeff jeffrey jeffery",
    "geoffrey": "geoff jeff jeffrey jeffery",
    "john": "jonathan jon johnny jack",
    "jonathan": "john jon johnny",
    "jon": "john jonathan johnny",
    "mike": "michael mick mickey",
    "michael": "mike mick mickey",
    "bill": "william will billy willy",
    "william": "bill will billy willy",
    "will": "william bill billy",
    "bob": "robert rob robbie bobby",
    "robert": "bob rob robbie bobby",
    "rob": "robert bob robbie",
    "jim": "james jimmy jamie",
    "james": "jim jimmy jamie",
    "jimmy": "james jim jamie",
    "joe": "joseph joey",
    "joseph": "joe joey",
    "tom": "thomas tommy",
    "thomas": "tom tommy",
    "dan": "daniel danny",
    "daniel": "dan danny",
    "dave": "david davey",
    "david": "dave davey",
    "steve": "steven stephen stevie",
    "steven": "steve stephen stevie",
    "stephen": "steve steven stevie",
    "chris": "christopher kristopher",
    "christopher": "chris",
    "matt": "matthew matty",
    "matthew": "matt matty",
    "nick": "nicholas nicky",
    "nicholas": "nick nicky",
    "tony": "anthony anton",
    "anthony": "tony anton",
    "rick": "richard ricky dick",
    "richard": "rick ricky dick",
    "dick": "richard rick",
    "ben": "benjamin benny",
    "benjamin": "ben benny",
    "sam": "samuel sammy samantha",
    "samuel": "sam sammy",
    "samantha": "sam sammy",
    "alex": "alexander alexandra alexis",
    "alexander": "alex",
    "alexandra": "alex",
    "liz": "elizabeth beth betty eliza",
    "elizabeth": "liz beth betty eliza",
    "beth": "elizabeth liz betty",
    "kate": "katherine catherine kathy cathy katie",
    "katherine": "kate kathy katie",
    "catherine": "kate cathy katie",
    "jen": "jennifer jenny",
    "jennifer": "jen jenny",
    "sue": "susan susie suzanne",
    "susan": "sue susie suzanne",
    "pat": "patricia patrick patty",
    "patricia": "pat patty tricia",
    "patrick": "pat paddy",
    "ed": "edward eddie ted teddy",
    "edward": "ed eddie ted teddy",
    "ted": "edward theodore teddy",
    "theodore": "ted teddy theo",
    "larry": "lawrence laurence",
    "lawrence": "larry",
    "charlie": "charles chuck",
    "charles": "charlie chuck",
    "chuck": "charles charlie",
    "harry": "harold henry",
    "harold": "harry hal",
    "henry": "harry hank",
    "hank": "henry",
    "greg": "gregory",
    "gregory": "greg",
    "andy": "andrew drew",
    "andrew": "andy drew",
    "drew": "andrew andy",
    "pete": "peter",
    "peter": "pete",
    "tim": "timothy timmy",
    "timothy": "tim timmy",
    "ron": "ronald ronnie",
    "ronald": "ron ronnie",
    "phil": "philip phillip",
    "philip": "phil",
    "phillip": "phil",
    "doug": "douglas",
    "douglas": "doug",
    "ray": "raymond",
    "raymond": "ray",
    "jerry": "gerald jerome",
    "gerald": "jerry gerry",
    "gerry": "gerald jerry",
    "ken": "kenneth kenny",
    "kenneth": "ken kenny",
    "don": "donald donnie",
    "donald": "don donnie",
    "frank": "francis franklin frankie",
    "francis": "frank frankie",
    "roger": "rodger",
    "rodger": "roger",
    "al": "albert alan allen alfred",
    "albert": "al bert",
    "alan": "al",
    "allen": "al",
    "alfred": "al fred alfie",
    "fred": "frederick alfred freddy",
    "frederick": "fred freddy",
    "wes": "wesley",
    "wesley": "wes",
    "stan": "stanley",
    "stanley": "stan",
    "marge": "margaret maggie peggy",
    "margaret": "marge maggie peggy meg",
    "maggie": "margaret marge",
    "peggy": "margaret marge",
    "nancy": "ann anne anna",
    "ann": "anna anne annie",
    "anna": "ann anne annie",
    "anne": "ann anna annie",
    "debbie": "deborah deb",
    "deborah": "debbie deb",
    "deb": "deborah debbie",
    "linda": "lynn lindy",
    "lynn": "linda lynne",
    "barb": "barbara",
    "barbara": "barb barbie",
    "carol": "caroline carolyn",
    "caroline": "carol",
    "carolyn": "carol",
    "cindy": "cynthia",
    "cynthia": "cindy",
    "donna": "don",
    "jane": "janet janice",
    "janet": "jane jan",
    "janice": "jane jan",
    "jan": "janet janice jane",
    "judy": "judith judi",
    "judith": "judy judi",
    "julie": "julia juliet",
    "julia": "julie",
    "kathy": "katherine catherine kate katie",
    "katie": "katherine catherine kate kathy",
    "mary": "marie maria",
    "marie": "mary maria",
    "maria": "mary marie",
    "pam": "pamela",
    "pamela": "pam",
    "sandy": "sandra",
    "sandra": "sandy",
    "sharon": "shari",
    "shari": "sharon",
    "steph": "stephanie stephany",
    "stephanie": "steph stephany",
    "terri": "teresa theresa",
    "teresa": "terri theresa",
    "theresa": "terri teresa",
    "vicky": "victoria",
    "victoria": "vicky vicki",
    "vicki": "victoria vicky",
}

NICKNAMES: Mapping[str, frozenset[str]] = MappingProxyType(
    {name: frozenset(variants.split()) for name, variants in _NICKNAME_TABLE.items()}
)


# ------------------------------------------------------------------
# Normalization and parsing
# ------------------------------------------------------------------

def normalize(value: str | None) -> str:
    """Trim, collapse internal whitespace and lowercase. Idempotent."""
    if not value:
        return ""
    return " ".join(value.split()).lower()


def is_email(value: str) -> bool:
    return "@" in value and "." in value


def clean_display_name(name: str | None) -> str:
    """Strip a trailing parenthetical suffix: "Jones, Jeffery (J)" -> "Jones, Jeffery"."""
    if not name:
        return ""
    name = name.strip()
    paren = name.rfind("(")
    if paren > 0 and name.endswith(")"):
        name = name[:paren].strip()
    return name


def parse_name(name: str | None) -> tuple[str, str]:
    """Split a display name into (given, family).

    "Last, First" splits on the first comma; "First [Middle] Last" takes the
    first and last tokens; a single token is treated as a family name.
    """
    name = clean_display_name(name)
    if not name:
        return "", ""
    if "," in name:
        family, given = (p.strip() for p in name.split(",", 1))
        return given, family
    parts = name.split()
    if len(parts) >= 2:
        return parts[0], parts[-1]
    return "", name


def name_permutations(name: str) -> list[str]:
    """Alternate orderings of a name to try against directory entries."""
    name = clean_display_name(name)
    permutations: list[str] = []
    if "," in name:
        parts = [p.strip() for p in name.split(",")]
        if len(parts) == 2 and all(parts):
            family, given = parts
            permutations.append(f"{given} {family}")
            permutations.append(f"{family} {given}")
        return permutations

    parts = name.split()
    if len(parts) >= 2:
        given = " ".join(parts[:-1])
        family = parts[-1]
        permutations.append(f"{family}, {given}")
        permutations.append(f"{family} {given}")
    return permutations


# ------------------------------------------------------------------
# Comparison
# ------------------------------------------------------------------

def first_names_match(a: str | None, b: str | None) -> bool:
    """Exact, nickname (either direction) or a >=3 character prefix."""
    a = normalize(a)
    b = normalize(b)
    if not a or not b:
        return False
    if a == b:
        return True
    if b in NICKNAMES.get(a, ()) or a in NICKNAMES.get(b, ()):
        return True
    if len(a) >= 3 and b.startswith(a):
        return True
    if len(b) >= 3 and a.startswith(b):
        return True
    return False


def last_names_match(a: str | None, b: str | None) -> bool:
    a = normalize(a)
    b = normalize(b)
    return bool(a) and a == b


def similarity(a: str | None, b: str | None) -> float:
    """1 - Levenshtein distance / max length, in [0, 1]."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


def structured_score(
    input_given: str, input_family: str, candidate_given: str, candidate_family: str
) -> float:
    """Score a parsed (given, family) pair against a directory entry's names."""
    if not last_names_match(input_family, candidate_family):
        return 0.0
    if first_names_match(input_given, candidate_given):
        return STRUCTURED_MATCH_SCORE
    given_sim = similarity(normalize(input_given), normalize(candidate_given))
    if given_sim >= PARTIAL_MIN_GIVEN_SIMILARITY:
        return PARTIAL_BASE_SCORE + PARTIAL_WEIGHT * given_sim
    return 0.0


def tier_for_similarity(score: float) -> MatchConfidence:
    if score >= HIGH_THRESHOLD:
        return MatchConfidence.HIGH
    if score >= MEDIUM_THRESHOLD:
        return MatchConfidence.MEDIUM
    # Anything kept (>= DISCARD_THRESHOLD) is at least LOW.
    if score >= DISCARD_THRESHOLD:
        return MatchConfidence.LOW
    return MatchConfidence.NO_MATCH
