"""Ghanaian name variant scoring.

Register names follow local patterns that plain edit distance handles badly:
- Traditional and church titles (NII, NANA, OPANYIN, ELDER, DCNS)
- Akan day names with several spellings (KOFI / FIIFI, KWAME / KWAMI)
- Phonetically similar surnames (MENSAH / MENSA, TWUMASI / TUMASI)
"""

from __future__ import annotations

import re

GHANAIAN_TITLES = frozenset(
    {
        "elder", "eld", "deacon", "dcn", "deaconess", "dcns", "pastor", "pst",
        "apostle", "apt", "prophet", "prophetess", "evangelist", "reverend", "rev",
        "bishop", "overseer", "nii", "naa", "nana", "maame", "mama", "papa",
        "opanyin", "obaapanyin", "togbe", "torgbe", "nene", "dr", "prof",
        "mrs", "mr", "miss", "ms", "madam",
    }
)

# Akan day-of-birth names, male and female spellings
DAY_NAMES: dict[str, dict[str, list[str]]] = {
    "sunday": {
        "male": ["kwasi", "kwesi", "akwasi", "kosi"],
        "female": ["akosua", "esi"],
    },
    "monday": {
        "male": ["kwadwo", "kojo", "kodwo", "cudjoe"],
        "female": ["adwoa", "adjoa", "ajua"],
    },
    "tuesday": {
        "male": ["kwabena", "kobina", "kobena", "ebo"],
        "female": ["abena", "araba", "abenaa"],
    },
    "wednesday": {
        "male": ["kwaku", "kweku", "kuuku"],
        "female": ["akua", "ekua", "kukua"],
    },
    "thursday": {
        "male": ["yaw", "ekow", "yawo"],
        "female": ["yaa", "aba", "yaaba"],
    },
    "friday": {
        "male": ["kofi", "fiifi"],
        "female": ["afua", "efua", "afi"],
    },
    "saturday": {
        "male": ["kwame", "kwami", "kwamena"],
        "female": ["ama", "amma", "amoah"],
    },
}

SURNAME_VARIANTS: dict[str, list[str]] = {
    "mensah": ["mensa", "mensaa", "mensah"],
    "owusu": ["owusu", "owusu-ansah", "owusu-boateng"],
    "aryeetey": ["aryeetey", "aryetey", "ariyetey"],
    "wilson": ["wilson", "willson"],
    "lamptey": ["lamptey", "lampte", "lamtey"],
    "addai": ["addai", "adai", "addey"],
    "addo": ["addo", "ado"],
    "boateng": ["boateng", "boatng", "boating"],
    "asante": ["asante", "asantey", "asanti"],
    "ababio": ["ababio", "ababyo"],
    "adjei": ["adjei", "adgei", "adjey"],
    "amoah": ["amoah", "amoa", "amuah"],
    "ansah": ["ansah", "ansa", "ansar"],
    "appiah": ["appiah", "apia", "apiah"],
    "tetteh": ["tetteh", "teteh", "tete"],
    "twumasi": ["twumasi", "tumasi", "twumase"],
    "asare": ["asare", "asarey", "asareh"],
}

_DAY_LOOKUP: dict[str, str] = {
    name: day
    for day, variants in DAY_NAMES.items()
    for name in variants["male"] + variants["female"]
}

_SURNAME_LOOKUP: dict[str, str] = {
    variant: canonical
    for canonical, variants in SURNAME_VARIANTS.items()
    for variant in variants
}

# Digraphs folded before phonetic encoding (ADWOA -> ADOA, AGYEMAN -> AJEMAN)
_PHONETIC_FOLDS = [
    ("dw", "d"),
    ("tw", "t"),
    ("gy", "j"),
    ("ey", "e"),
    ("ny", "n"),
    ("kw", "k"),
    ("oo", "o"),
    ("ee", "e"),
    ("aa", "a"),
    ("ii", "i"),
    ("uu", "u"),
]

_SOUNDEX_CODES = {
    **dict.fromkeys("bfpv", "1"),
    **dict.fromkeys("cgjkqsxz", "2"),
    **dict.fromkeys("dt", "3"),
    "l": "4",
    **dict.fromkeys("mn", "5"),
    "r": "6",
}

PHONETIC_CODE_LENGTH = 6


def strip_titles(name: str) -> str:
    """Lower-case a name and drop title words (ELDER, NII, MRS, ...)."""
    words = name.lower().split()
    return " ".join(w for w in words if w.strip(".") not in GHANAIAN_TITLES)


def tokenize_name(name: str) -> list[str]:
    """Split a title-stripped name on whitespace and periods."""
    return [p for p in re.split(r"[\s.]+", strip_titles(name)) if p]


def are_day_name_variants(name1: str, name2: str) -> bool:
    """True when both names are spellings of the same Akan day name."""
    day1 = _DAY_LOOKUP.get(name1.lower().strip())
    day2 = _DAY_LOOKUP.get(name2.lower().strip())
    return day1 is not None and day1 == day2


def ghanaian_phonetic(name: str) -> str:
    """Soundex-style code adapted to Ghanaian spelling patterns."""
    s = name.lower().strip()
    s = re.sub(r"[^a-z]", "", s)
    if not s:
        return ""

    for pattern, replacement in _PHONETIC_FOLDS:
        s = s.replace(pattern, replacement)

    code = s[0].upper()
    last_code = _SOUNDEX_CODES.get(s[0], "")
    for char in s[1:]:
        if len(code) >= PHONETIC_CODE_LENGTH:
            break
        char_code = _SOUNDEX_CODES.get(char, "")
        if char_code and char_code != last_code:
            code += char_code
            last_code = char_code
        elif not char_code:
            # vowels reset the duplicate check
            last_code = ""

    return (code + "0" * PHONETIC_CODE_LENGTH)[:PHONETIC_CODE_LENGTH]


def are_phonetically_similar(name1: str, name2: str) -> bool:
    code1 = ghanaian_phonetic(name1)
    code2 = ghanaian_phonetic(name2)
    if not code1 or not code2:
        return False
    return code1 == code2 or code1[:4] == code2[:4]


def ghanaian_name_similarity(name1: str, name2: str) -> float:
    """Token overlap that understands day names, phonetics and prefixes.

    Each token of the first name is paired with the first unused token of the
    second name that matches, scoring:
    - exact: 1.0
    - day-name variant: 0.9
    - phonetic match: 0.85
    - shared prefix (both tokens 4+ letters): 0.7

    Single-letter initials are skipped. The total is divided by the larger
    token count.
    """
    tokens1 = tokenize_name(name1)
    tokens2 = tokenize_name(name2)
    if not tokens1 or not tokens2:
        return 0.0

    matches = 0.0
    used: set[int] = set()
    for t1 in tokens1:
        if len(t1) == 1:
            continue
        for j, t2 in enumerate(tokens2):
            if j in used or len(t2) == 1:
                continue
            if t1 == t2:
                score = 1.0
            elif are_day_name_variants(t1, t2):
                score = 0.9
            elif are_phonetically_similar(t1, t2):
                score = 0.85
            elif len(t1) >= 4 and len(t2) >= 4 and (t1.startswith(t2) or t2.startswith(t1)):
                score = 0.7
            else:
                continue
            matches += score
            used.add(j)
            break

    return matches / max(len(tokens1), len(tokens2))


def normalize_surname(surname: str) -> str:
    """Map a surname spelling to its canonical form (MENSA -> mensah)."""
    lower = surname.lower().strip()
    return _SURNAME_LOOKUP.get(lower, lower)


def are_surname_variants(surname1: str, surname2: str) -> bool:
    return normalize_surname(surname1) == normalize_surname(surname2)


def is_known_surname(token: str) -> bool:
    return token.lower().strip() in _SURNAME_LOOKUP
