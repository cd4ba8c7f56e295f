import re
from typing import Dict, List, Optional, Tuple

OTHER = "OTHER"
DEFAULT_EMOJI = "🌐"

# code -> (emoji, display name, name keywords)
COUNTRIES: Dict[str, Tuple[str, str, List[str]]] = {
    "HK": ("🇭🇰", "Hong Kong", ["Hong Kong", "Hongkong", "香港"]),
    "TW": ("🇹🇼", "Taiwan", ["Taiwan", "Taipei", "台湾", "台灣"]),
    "JP": ("🇯🇵", "Japan", ["Japan", "Tokyo", "Osaka", "日本"]),
    "KR": ("🇰🇷", "Korea", ["Korea", "Seoul", "韩国", "韓國"]),
    "SG": ("🇸🇬", "Singapore", ["Singapore", "新加坡", "狮城"]),
    "US": ("🇺🇸", "United States", ["United States", "America", "USA", "Los Angeles", "Seattle", "San Jose", "美国"]),
    "GB": ("🇬🇧", "United Kingdom", ["United Kingdom", "England", "London", "UK", "英国"]),
    "DE": ("🇩🇪", "Germany", ["Germany", "Frankfurt", "德国"]),
    "FR": ("🇫🇷", "France", ["France", "Paris", "法国"]),
    "NL": ("🇳🇱", "Netherlands", ["Netherlands", "Amsterdam", "荷兰"]),
    "AU": ("🇦🇺", "Australia", ["Australia", "Sydney", "澳大利亚", "澳洲"]),
    "CA": ("🇨🇦", "Canada", ["Canada", "Toronto", "Vancouver", "加拿大"]),
    "RU": ("🇷🇺", "Russia", ["Russia", "Moscow", "俄罗斯"]),
    "IN": ("🇮🇳", "India", ["India", "Mumbai", "印度"]),
    "BR": ("🇧🇷", "Brazil", ["Brazil", "巴西"]),
    "AR": ("🇦🇷", "Argentina", ["Argentina", "阿根廷"]),
    "TR": ("🇹🇷", "Turkey", ["Turkey", "Istanbul", "土耳其"]),
    "TH": ("🇹🇭", "Thailand", ["Thailand", "泰国"]),
    "VN": ("🇻🇳", "Vietnam", ["Vietnam", "越南"]),
    "MY": ("🇲🇾", "Malaysia", ["Malaysia", "马来西亚"]),
    "PH": ("🇵🇭", "Philippines", ["Philippines", "菲律宾"]),
    "ID": ("🇮🇩", "Indonesia", ["Indonesia", "印尼", "印度尼西亚"]),
    "AE": ("🇦🇪", "United Arab Emirates", ["UAE", "Dubai", "阿联酋"]),
    "ZA": ("🇿🇦", "South Africa", ["South Africa", "南非"]),
    "CH": ("🇨🇭", "Switzerland", ["Switzerland", "瑞士"]),
    "IT": ("🇮🇹", "Italy", ["Italy", "Milan", "意大利"]),
    "ES": ("🇪🇸", "Spain", ["Spain", "Madrid", "西班牙"]),
    "SE": ("🇸🇪", "Sweden", ["Sweden", "瑞典"]),
    "NO": ("🇳🇴", "Norway", ["Norway", "挪威"]),
    "FI": ("🇫🇮", "Finland", ["Finland", "芬兰"]),
    "DK": ("🇩🇰", "Denmark", ["Denmark", "丹麦"]),
    "PL": ("🇵🇱", "Poland", ["Poland", "波兰"]),
    "CZ": ("🇨🇿", "Czechia", ["Czech", "捷克"]),
    "AT": ("🇦🇹", "Austria", ["Austria", "Vienna", "奥地利"]),
    "IE": ("🇮🇪", "Ireland", ["Ireland", "Dublin", "爱尔兰"]),
    "PT": ("🇵🇹", "Portugal", ["Portugal", "葡萄牙"]),
    "GR": ("🇬🇷", "Greece", ["Greece", "希腊"]),
    "IL": ("🇮🇱", "Israel", ["Israel", "以色列"]),
    "MX": ("🇲🇽", "Mexico", ["Mexico", "墨西哥"]),
    "CL": ("🇨🇱", "Chile", ["Chile", "智利"]),
    "CO": ("🇨🇴", "Colombia", ["Colombia", "哥伦比亚"]),
    "PE": ("🇵🇪", "Peru", ["Peru", "秘鲁"]),
    "NZ": ("🇳🇿", "New Zealand", ["New Zealand", "新西兰"]),
    OTHER: (DEFAULT_EMOJI, "Other", []),
}


def country_emoji(code: str) -> str:
    entry = COUNTRIES.get(code)
    return entry[0] if entry else DEFAULT_EMOJI


def country_name(code: str) -> str:
    entry = COUNTRIES.get(code)
    return entry[1] if entry else code


def country_label(code: str) -> str:
    """Display label used as the country group's outbound tag, e.g. '🇭🇰 Hong Kong'."""
    return f"{country_emoji(code)} {country_name(code)}"


def _flag_to_code(flag: str) -> str:
    return "".join(chr(ord(c) - 0x1F1E6 + ord("A")) for c in flag)


_FLAG_RE = re.compile("[\U0001F1E6-\U0001F1FF]{2}")


def detect_country(name: str) -> Optional[str]:
    """
    Guess a node's country code from its display name.
    Flags win over words; bare two-letter codes only match as whole tokens.
    """
    if not name:
        return None

    flag = _FLAG_RE.search(name)
    if flag:
        code = _flag_to_code(flag.group(0))
        if code in COUNTRIES:
            return code

    lowered = name.lower()
    tokens = [t for t in re.split(r"[^A-Za-z]+", name) if t]
    for code, (_, _, keywords) in COUNTRIES.items():
        for keyword in keywords:
            # short upper-case abbreviations (USA, UK) only match whole tokens
            if keyword.isupper() and len(keyword) <= 3:
                if keyword in tokens:
                    return code
            elif keyword.lower() in lowered:
                return code

    for token in tokens:
        if len(token) == 2 and token.isupper() and token in COUNTRIES:
            return token

    return None
