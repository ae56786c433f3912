"""Словарь синонимов русских единиц измерения, веществ и материалов.

Структура: категория ESG-отчётности → вещества и единицы, у каждой группы
канонический термин и список синонимов (сокращения, опечатки, частые
OCR-замены, украинские варианты).
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SynonymGroup:
    canonical: str
    synonyms: tuple[str, ...]
    category: str
    type: str  # "substance" | "unit"


def _groups(category: str, kind: str, items: list[tuple[str, list[str]]]) -> list[SynonymGroup]:
    return [SynonymGroup(canonical, tuple(synonyms), category, kind) for canonical, synonyms in items]


_TONNE = ("т", ["тонн", "тонны", "тонна"])
_KG = ("кг", ["килограмм", "килограммов"])
_CUBIC = ("м³", ["м3", "куб.м", "кубометр", "кубических метров", "кубометров"])
_LITRE = ("л", ["литр", "литров", "литра", "дм³", "дм3"])

RUSSIAN_SYNONYM_DICTIONARY: dict[str, dict[str, list[SynonymGroup]]] = {
    "fuel_liquid": {
        "substances": _groups("fuel_liquid", "substance", [
            ("дизельное топливо", [
                "дизель", "ДТ", "солярка", "дизтопливо", "диз топливо", "дизел", "дызель",
                "д/т", "диз", "дизель топливо", "диз.топливо", "д.т.", "дизтоп",
                "дизельн.топливо", "диз-топливо", "дизельне паливо", "ДП",
                "дизеля", "дизeль", "дuзель", "диэель", "дазель", "днзель", "лизель",
                "солярочка", "дизуха", "д-т",
            ]),
            ("бензин", [
                "АИ-92", "АИ-95", "АИ-98", "АИ-80", "бензин АИ-100",
                "бензин неэтилированный", "автобензин",
            ]),
            ("керосин", ["авиакеросин", "ТС-1", "РТ", "керосин осветительный", "реактивное топливо"]),
            ("мазут", ["мазут топочный", "мазут М-40", "мазут М-100", "мазут М-200"]),
            ("биодизель", ["этанол", "метанол", "МТБЭ", "биотопливо"]),
            ("условное топливо", ["топливо условное", "у.т."]),
        ]),
        "units": _groups("fuel_liquid", "unit", [
            _LITRE,
            _CUBIC,
            _TONNE,
            _KG,
            ("т у.т.", ["тонн у.т.", "тонны у.т.", "тонна у.т.", "кг у.т.", "килограмм у.т."]),
        ]),
    },
    "fuel_gaseous": {
        "substances": _groups("fuel_gaseous", "substance", [
            ("природный газ", [
                "газ", "метан", "ПГ", "газ природный", "CH4", "СН4", "CH₄",
                "газприр.", "мет.газ", "прир.газ", "п.г.", "газ прир.", "природ.газ",
                "прир газ", "газ-метан", "природний газ", "гаэ", "гах", "мeтан", "метаи",
                "газообразное топливо", "газовое топливо", "углеводородный газ",
                "компримированный газ", "сжатый газ", "КПГ", "СПГ",
            ]),
            ("сжиженный газ", ["пропан", "бутан", "пропан-бутан", "СУГ", "сжиженный углеводородный газ"]),
            ("попутный нефтяной газ", ["ПНГ", "газ попутный"]),
            ("биогаз", ["синтез-газ", "коксовый газ", "доменный газ"]),
        ]),
        "units": _groups("fuel_gaseous", "unit", [
            _CUBIC,
            ("нм³", ["нм3", "нормальный кубометр", "норм.куб.м"]),
            ("тыс.м³", ["тысяч кубометров", "тыс.нм³", "тыс.м3"]),
            ("млн.м³", ["млн.нм³", "миллионов кубометров", "млн.м3"]),
        ]),
    },
    "fuel_solid": {
        "substances": _groups("fuel_solid", "substance", [
            ("уголь", ["каменный уголь", "бурый уголь", "уголь энергетический"]),
            ("кокс", ["антрацит", "полукокс", "угольная пыль"]),
            ("торф", ["торфяные брикеты"]),
            ("пеллеты", ["древесные гранулы", "древесные пеллеты"]),
            ("древесина", ["дрова", "опилки", "щепа", "биомасса", "отходы древесины"]),
        ]),
        "units": _groups("fuel_solid", "unit", [_TONNE, _KG, ("ц", ["центнер", "центнеров"])]),
    },
    "electricity": {
        "substances": _groups("electricity", "substance", [
            ("электроэнергия", [
                "электричество", "эл.энергия", "электроэнергия активная",
                "потребление электроэнергии", "электр", "э/э", "эл-во", "электр-во",
                "э-энергия", "эл энергия", "эл-энергия", "електроенергія", "електрика",
                "электpoэнергия", "eлектроэнергия", "електроэнергия", "эдектроэнергия",
                "злектроэнергия", "э.э.", "эл.эн.", "электро-энергия", "электро энергия",
            ]),
            ("активная электроэнергия", ["активная энергия", "электроэнергия активная импорт"]),
            ("реактивная электроэнергия", ["реактивная энергия"]),
            ("электрическая мощность", ["мощность электрическая", "нагрузка электрическая"]),
        ]),
        "units": _groups("electricity", "unit", [
            ("кВт·ч", ["кВтч", "кВт*ч", "кВт-ч", "киловатт-час", "киловатт-часов", "kWh"]),
            ("МВт·ч", ["МВтч", "МВт*ч", "МВт-ч", "мегаватт-час", "мегаватт-часов", "MWh"]),
            ("ГВт·ч", ["ГВтч", "ГВт*ч", "ГВт-ч", "гигаватт-час", "гигаватт-часов"]),
            ("квар·ч", ["кварч", "квар*ч", "киловар-час", "киловар-часов"]),
            ("кВт", ["киловатт", "киловаттов"]),
            ("МВт", ["мегаватт", "мегаваттов"]),
        ]),
    },
    "heat_energy": {
        "substances": _groups("heat_energy", "substance", [
            ("тепловая энергия", [
                "теплоэнергия", "отопление", "теплота", "энергия тепловая", "тепло",
                "тепл.энергия", "тепл-энергия", "теп.энергия", "тепло-энергия",
                "тепловая мощность", "теплопотребление", "централизованное отопление",
                "ЦО", "теплова енергія", "опалення", "тeпло", "теплоэнepгия", "обогрев",
            ]),
            ("горячая вода", ["ГВС", "горячее водоснабжение"]),
            ("теплоснабжение", ["централизованное теплоснабжение", "отопление централизованное"]),
            ("пар", ["пар технологический", "пар отопительный", "пар насыщенный"]),
            ("теплоноситель", ["конденсат"]),
        ]),
        "units": _groups("heat_energy", "unit", [
            ("Гкал", [
                "гигакалория", "гигакалорий", "гигакалории", "Г.кал", "Г-кал",
                "Гкал/ч", "Гкал/час", "Гкaл", "Гка1", "гігакалорія",
            ]),
            ("ккал", ["килокалория", "килокалорий"]),
            ("Мкал", ["мегакалория", "мегакалорий"]),
            ("ГДж", ["гигаджоуль", "гигаджоулей"]),
            ("МДж", ["мегаджоуль", "мегаджоулей"]),
            ("кДж", ["килоджоуль", "килоджоулей"]),
        ]),
    },
    "transport": {
        "substances": _groups("transport", "substance", [
            ("пробег", ["километраж", "пройденное расстояние", "пройдено км", "общий пробег"]),
            ("транспортная работа", ["грузооборот", "тонно-километраж"]),
            ("грузоперевозки", ["перевозка грузов"]),
            ("пассажироперевозки", ["перевозка пассажиров", "пассажирооборот"]),
            ("машино-часы", ["моточасы", "часы работы", "наработка", "время работы двигателя"]),
        ]),
        "units": _groups("transport", "unit", [
            ("км", [
                "километр", "километров", "километра", "километры", "km", "к.м",
                "кілометр", "кілометрів", "километp", "киломeтр",
            ]),
            ("м", ["метр", "метров"]),
            ("ткм", ["т-км", "т·км", "т⋅км", "тонно-километр", "тонно-километров"]),
            ("пкм", ["п-км", "п⋅км", "пассажиро-километр", "пассажиро-километров"]),
            ("ч", ["час", "часов", "часа"]),
            ("мч", ["моточас", "моточасов", "моточаса", "маш-ч", "машино-час", "машино-часов"]),
        ]),
    },
    "water": {
        "substances": _groups("water", "substance", [
            ("холодная вода", ["ХВС", "холодное водоснабжение", "водопроводная вода"]),
            ("горячая вода", ["ГВС", "горячее водоснабжение"]),
            ("техническая вода", ["производственная вода", "оборотная вода"]),
            ("сточные воды", ["водоотведение", "канализация", "стоки", "промышленные стоки"]),
        ]),
        "units": _groups("water", "unit", [
            _CUBIC,
            _LITRE,
            ("тыс.м³", ["тысяч кубометров"]),
            ("млн.м³", ["миллионов кубометров"]),
        ]),
    },
    "materials_metals": {
        "substances": _groups("materials_metals", "substance", [
            ("сталь", ["углеродистая сталь", "легированная сталь", "нержавеющая сталь"]),
            ("чугун", ["железо"]),
            ("металлопрокат", ["металлоизделия"]),
            ("цветные металлы", ["алюминий", "медь", "цинк", "свинец", "олово", "никель", "титан", "магний"]),
            ("металлолом", ["лом черных металлов", "лом цветных металлов"]),
        ]),
        "units": _groups("materials_metals", "unit", [
            _TONNE, _KG, ("ц", ["центнер", "центнеров"]), ("г", ["грамм", "граммов"]),
        ]),
    },
    "materials_construction": {
        "substances": _groups("materials_construction", "substance", [
            ("цемент", ["портландцемент"]),
            ("бетон", ["железобетон", "раствор"]),
            ("кирпич", ["керамический кирпич", "силикатный кирпич", "облицовочный кирпич"]),
            ("инертные материалы", ["песок", "щебень", "гравий"]),
            ("вяжущие", ["известь", "гипс"]),
            ("стекло", ["оконное стекло", "листовое стекло", "стеклопакеты"]),
        ]),
        "units": _groups("materials_construction", "unit", [
            _TONNE,
            _KG,
            _CUBIC,
            ("м²", ["м2", "квадратный метр", "квадратных метров", "кв.м"]),
            ("шт", ["штук", "штуки", "штука", "ед", "единиц", "единица"]),
        ]),
    },
    "chemicals_plastics": {
        "substances": _groups("chemicals_plastics", "substance", [
            ("пластик", ["полиэтилен", "полипропилен", "ПВХ", "поливинилхлорид"]),
            ("полимеры", ["полистирол", "полиамид", "полиуретан", "эпоксидные смолы"]),
            ("химические реактивы", ["растворители", "кислоты", "щелочи"]),
            ("лакокрасочные материалы", ["краски", "лаки", "эмали", "грунтовки"]),
        ]),
        "units": _groups("chemicals_plastics", "unit", [
            _TONNE, _KG, ("л", ["литр", "литров", "литра"]), ("м³", ["м3", "кубометров"]),
        ]),
    },
    "waste": {
        "substances": _groups("waste", "substance", [
            ("твердые коммунальные отходы", ["отходы", "ТКО"]),
            ("промышленные отходы", ["производственные отходы"]),
            ("строительные отходы", ["строительный мусор"]),
            ("вторичные ресурсы", ["металлолом", "макулатура", "стеклобой", "пластиковые отходы"]),
            ("органические отходы", ["биоотходы", "пищевые отходы"]),
            ("опасные отходы", ["медицинские отходы", "электронные отходы"]),
        ]),
        "units": _groups("waste", "unit", [_TONNE, _KG, _CUBIC]),
    },
}


class SynonymDictionary:
    """Поиск по словарю. Сравнение без учёта регистра и пробелов по краям.

    Категории перебираются в порядке объявления, поэтому у общих синонимов
    («м3», «тонн») побеждает первая категория, где они встречаются.
    """

    def __init__(self, data: Optional[dict[str, dict[str, list[SynonymGroup]]]] = None) -> None:
        self.data = data if data is not None else RUSSIAN_SYNONYM_DICTIONARY

    @property
    def categories(self) -> list[str]:
        return list(self.data)

    def _iter_groups(self, category: Optional[str] = None):
        categories = [category] if category else list(self.data)
        for cat in categories:
            section = self.data.get(cat)
            if not section:
                continue
            yield from section.get("substances", [])
            yield from section.get("units", [])

    def _find_group(self, term: str, category: Optional[str] = None) -> Optional[SynonymGroup]:
        needle = term.lower().strip()
        for group in self._iter_groups(category):
            if group.canonical.lower() == needle:
                return group
            if any(s.lower() == needle for s in group.synonyms):
                return group
        return None

    def find_canonical(self, term: str, category: Optional[str] = None) -> str:
        """Канонический термин; если не найден, исходная строка."""
        group = self._find_group(term, category)
        return group.canonical if group else term

    def get_synonyms(self, canonical: str, category: Optional[str] = None) -> list[str]:
        needle = canonical.lower().strip()
        for group in self._iter_groups(category):
            if group.canonical.lower() == needle:
                return list(group.synonyms)
        return []

    def get_category(self, term: str) -> Optional[str]:
        group = self._find_group(term)
        return group.category if group else None

    def get_type(self, term: str) -> Optional[str]:
        group = self._find_group(term)
        return group.type if group else None

    def all_terms(self) -> list[str]:
        """Все канонические термины и синонимы без повторов, в порядке словаря."""
        seen: dict[str, None] = {}
        for group in self._iter_groups():
            seen.setdefault(group.canonical, None)
            for synonym in group.synonyms:
                seen.setdefault(synonym, None)
        return list(seen)

    def unit_terms(self) -> list[str]:
        seen: dict[str, None] = {}
        for group in self._iter_groups():
            if group.type == "unit":
                seen.setdefault(group.canonical, None)
                for synonym in group.synonyms:
                    seen.setdefault(synonym, None)
        return list(seen)

    def get_dictionary_stats(self) -> dict:
        stats = {
            "total_categories": 0,
            "total_substances": 0,
            "total_units": 0,
            "total_synonyms": 0,
            "category_breakdown": {},
        }
        for category, section in self.data.items():
            substances = section.get("substances", [])
            units = section.get("units", [])
            synonyms = sum(len(g.synonyms) for g in substances) + sum(len(g.synonyms) for g in units)
            stats["total_categories"] += 1
            stats["total_substances"] += len(substances)
            stats["total_units"] += len(units)
            stats["total_synonyms"] += synonyms
            stats["category_breakdown"][category] = {
                "substances": len(substances),
                "units": len(units),
                "synonyms": synonyms,
            }
        return stats
