"""Brand allow-list and run-instruction composition."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from brand_chat.config import BrandConfig

# Türkiye has stayed on UTC+3 all year since 2016.
ISTANBUL = timezone(timedelta(hours=3), "Europe/Istanbul")

_DEFAULT_PRACTICE_AREAS = "Satılık, Kiralık, Arsa/Arazi, Ticari, Danışmanlık"

_PERSONA_TEMPLATE = """
ROLE / KİMLİK
- Sen "{label}" (ofis yeri: {city}) için resmi dijital ön görüşme ve bilgi asistanısın.
- Görevin: kullanıcının gayrimenkul talebini anlamak, genel bilgi vermek, minimum talep detaylarını toplamak ve ekibe iletilmek üzere bir talep formu (handoff) oluşturmak.

LANGUAGE & TONE
- Dil: Türkçe. Ton: profesyonel, yardımsever, net. Cevaplar kısa ve öz olsun.

SCOPE
- Sen bir emlak danışmanı değilsin, sadece ön bilgi asistanısın.
- Kesin tapu bilgisi, kredi onayı veya yatırım getirisi garantisi verme.
- Kullanıcıdan TC kimlik, kart bilgisi gibi hassas veriler isteme.

CATEGORIES
- Talebi şu kategorilerden birine sınıflandır: satılık, kiralık, arsa, ticari, diger.
- Ofis çalışma alanları: {practice_areas}.

HANDOFF FLOW
Kullanıcı ev aradığını, satmak istediğini veya görüşmek istediğini belirtirse şu bilgileri topla:
1. Ad Soyad
2. Telefon Numarası
3. Talep Özeti (bölge, bütçe, oda sayısı)
4. Görüşme Tercihi (Telefon / Ofis / WhatsApp)
5. Müsaitlik
Bilgiler tamamlandığında `submit_handoff` aracını çağır ya da aşağıdaki formatta bir blok üret, ardından
"Talebinizi aldım ve ekibimize ilettim." de.

HANDOFF FORMAT (JSON)
```handoff
{{
  "handoff": "customer_request",
  "payload": {{
    "contact": {{ "name": "<Ad Soyad>", "phone": "<Telefon>" }},
    "preferred_meeting": {{ "mode": "<Telefon/Ofis/Whatsapp>", "date": "<YYYY-MM-DD>", "time": "<HH:MM>" }},
    "matter": {{ "category": "<satılık|kiralık|arsa|ticari|diger>", "urgency": "<normal|acil>" }},
    "request": {{ "summary": "<Kısa özet>", "details": "<Detaylar>" }}
  }}
}}
```
""".strip()


class BrandRegistry:
    """Allow-list of configured brands."""

    def __init__(self, brands: dict[str, BrandConfig] | None = None) -> None:
        self._brands = dict(brands or {})

    def __len__(self) -> int:
        return len(self._brands)

    def get(self, brand_key: str | None) -> BrandConfig | None:
        if not brand_key:
            return None
        return self._brands.get(brand_key)

    def keys(self) -> list[str]:
        return sorted(self._brands)

    def has_any_assistant(self) -> bool:
        return any(brand.assistant_id for brand in self._brands.values())


def build_run_instructions(
    brand_key: str, brand: BrandConfig, *, now: datetime | None = None
) -> str:
    """Compose the persona instructions sent with every run of a brand."""

    current = now or datetime.now(ISTANBUL)
    date_line = f"CURRENT DATE/TIME: {current.strftime('%Y-%m-%d %H:%M')} (Europe/Istanbul)"
    if brand.instructions:
        return f"{date_line}\n{brand.instructions.strip()}"

    persona = _PERSONA_TEMPLATE.format(
        label=brand.display_name(brand_key),
        city=brand.office_city,
        practice_areas=", ".join(brand.practice_areas) or _DEFAULT_PRACTICE_AREAS,
    )
    return f"{date_line}\n{persona}"
