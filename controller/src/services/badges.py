"""
Status badge rendering.
"""

PASS_COLOR = "#4c1"
FAIL_COLOR = "#c30"

SVG_TEMPLATE = """<?xml version='1.0'?>
<svg xmlns='http://www.w3.org/2000/svg' width='100' height='20'>
<linearGradient id='a' x2='0' y2='100%'>
    <stop offset='0' stop-color='#bbb' stop-opacity='.1'/>
    <stop offset='1' stop-opacity='.1'/>
</linearGradient>
<rect rx='3' width='100' height='20' fill='#555'/>
<rect rx='3' x='45' width='55' height='20' fill='{color}'/>
<path fill='{color}' d='M45 0h4v20h-4z'/>
<rect rx='3' width='100' height='20' fill='url(#a)'/>
<g fill='#fff' text-anchor='middle' font-family='DejaVu Sans,Verdana,Geneva,sans-serif' font-size='11'>
    <text x='24' y='15' fill='#010101' fill-opacity='.3'>{topic}</text>
    <text x='24' y='14'>{topic}</text>
    <text x='72' y='15' fill='#010101' fill-opacity='.3'>{label}</text>
    <text x='72' y='14'>{label}</text>
</g>
</svg>
"""

def status_svg(topic: str, label: str, color: str) -> str:
    return SVG_TEMPLATE.format(topic=topic, label=label, color=color)

def pass_fail_svg(topic: str, passed: bool) -> str:
    if passed:
        return status_svg(topic, "passing", PASS_COLOR)
    return status_svg(topic, "failing", FAIL_COLOR)
