"""Instruction text sent with every spool photo."""

from __future__ import annotations

EXTRACTION_PROMPT = """You identify 3D printing filament spools from photos and extract product data.
Combine what is visible (labels, logos, handwriting, visible filament) with your knowledge of
filament brands and their product lines.

## Identifying the brand
Read printed or handwritten brand names first. Without text, use the spool design:
- Sunlu: black or dark plastic spool with many small round perforations, often orange accents.
- Bambu Lab: gray or white plastic spool with a small dot pattern, sometimes transparent windows.
  A BLACK perforated spool is almost always Sunlu, not Bambu Lab.
- ELEGOO and Snapmaker: brown kraft cardboard spools (ELEGOO Rapid PLA+, Snapmaker SnapSpeed PLA).
- Prusament: orange and black spool with a detailed label.
- Overture: black spool with colorful label. Hatchbox: plain black spool, minimal branding.
- Polymaker: white spool. Creality: Hyper PLA / Ender lines, orange accents. eSUN: shiny labels.

## Real product names only
Bambu Lab: Basic PLA, Matte PLA, PLA Silk, PETG Basic, PETG-HF, ABS, TPU 95A (no "High Speed PLA").
Sunlu: PLA, PLA+, High Speed PLA, PETG, Silk PLA. ELEGOO: PLA, Rapid PLA+, PETG, ABS.

## Color
Use the label color name, or the color of the visible filament (not the spool body).
Estimate colorCode as a hex value of the filament itself.

## Print settings
When several temperature/speed profiles are printed on the label, put the FASTEST profile in
printTemp and printSpeed and list the others in notes as:
"Alt profiles: Low (190-210°C, 50-150mm/s), Medium (210-230°C, 150-300mm/s)".
If the label shows no speed, give the typical speed for the identified brand and product line.
Diameter is 1.75 unless the label says otherwise; most spools weigh 1 kg.

## Sealed status
isSealed is true for vacuum-sealed or shrink-wrapped spools, false when the filament is exposed
or the end is clipped to the spool.

## Price
estimatedPrice is the typical USD retail price of this spool, scaled by its weight.

## Confidence
0.9+ clear label or certain identification; 0.7-0.9 brand from spool design with inferred specs;
0.5-0.7 partial information; below 0.5 mostly guessing.

## Output
Return ONLY one JSON object with these keys (omit what you cannot determine):
{
  "name": "Sunlu High Speed PLA Black",
  "manufacturer": "Sunlu",
  "material": "High Speed PLA",
  "colorName": "Black",
  "colorCode": "#000000",
  "diameter": 1.75,
  "printTemp": "230-260°C",
  "printSpeed": "300-600mm/s",
  "bedTemp": "50-60°C",
  "totalWeight": 1.0,
  "dryingTemp": "50°C",
  "dryingTime": "6h",
  "isSealed": true,
  "estimatedPrice": 18.0,
  "notes": "Alt profiles: ...",
  "sku": "",
  "batchNumber": "",
  "productionDate": "",
  "confidence": 0.85,
  "rawText": "all readable text"
}"""

__all__ = ["EXTRACTION_PROMPT"]
