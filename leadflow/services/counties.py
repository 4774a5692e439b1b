COUNTY_ZIPS: dict[str, tuple[str, ...]] = {
    "camden": (
        "08002", "08003", "08004", "08007", "08009", "08012", "08018", "08021", "08026", "08029",
        "08030", "08031", "08033", "08034", "08035", "08043", "08045", "08049", "08078",
    ),
    "gloucester": (
        "08012", "08014", "08020", "08025", "08027", "08028", "08032", "08039", "08051", "08056",
        "08061", "08062", "08063", "08066", "08071", "08074", "08080", "08322",
    ),
    "burlington": (
        "08010", "08011", "08015", "08016", "08019", "08022", "08036", "08041", "08042", "08046",
        "08048", "08052", "08053", "08054", "08055", "08057", "08060", "08064", "08065", "08068",
        "08073", "08075", "08077", "08088", "08505", "08511", "08515", "08518", "08554", "08562",
    ),
}


def resolve_counties_to_zips(counties: list[str]) -> list[str]:
    """Expand county names to zip codes, keeping first-seen order and dropping duplicates.

    Unknown counties contribute nothing.
    """
    resolved: list[str] = []
    seen: set[str] = set()
    for county in counties:
        key = (county or "").strip().lower()
        key = key.removesuffix(" county")
        for zip_code in COUNTY_ZIPS.get(key, ()):
            if zip_code in seen:
                continue
            seen.add(zip_code)
            resolved.append(zip_code)
    return resolved
