"""Page-side JavaScript used by the search session.

Values interpolated into expressions go through `json.dumps` so quotes and
backslashes in queries or selectors cannot break out of the string literal.
"""

from __future__ import annotations

import json


def locate_input_script(selectors: list[str]) -> str:
    """Focus the first element matching one of `selectors` (in order).

    Evaluates to the matching selector, or null when none matches.
    """
    return f"""
(() => {{
  const selectors = {json.dumps(list(selectors))};
  for (const sel of selectors) {{
    const el = document.querySelector(sel);
    if (el) {{
      el.focus();
      return sel;
    }}
  }}
  return null;
}})()
""".strip()


def append_char_script(selector: str, char: str) -> str:
    return f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return false;
  el.value += {json.dumps(char)};
  el.dispatchEvent(new Event('input', {{ bubbles: true }}));
  return true;
}})()
""".strip()


def extract_results_script(query: str, *, max_search: int = 10, max_shopping: int = 5, max_images: int = 5) -> str:
    return f"""
(() => {{
  const results = [];
  document.querySelectorAll('div[data-ved] h3').forEach((h, index) => {{
    if (index < {max_search}) {{
      const link = h.closest('a');
      results.push({{type: 'search', title: h.textContent, url: link ? link.href : null, position: index + 1}});
    }}
  }});
  document.querySelectorAll('[data-ved] [role="listitem"]').forEach((item, index) => {{
    const title = item.querySelector('h3, h4');
    const price = item.querySelector('[data-currency-code]');
    const link = item.querySelector('a');
    if (title && index < {max_shopping}) {{
      results.push({{
        type: 'shopping',
        title: title.textContent,
        price: price ? price.textContent : null,
        url: link ? link.href : null,
        position: index + 1
      }});
    }}
  }});
  const images = [];
  document.querySelectorAll('img[data-ved]').forEach((img, index) => {{
    if (index < {max_images}) {{
      images.push({{type: 'image', src: img.src, alt: img.alt, position: index + 1}});
    }}
  }});
  return {{
    searchResults: results.filter(r => r.type === 'search'),
    shoppingResults: results.filter(r => r.type === 'shopping'),
    imageResults: images,
    totalResults: results.length,
    searchQuery: {json.dumps(query)},
    timestamp: new Date().toISOString()
  }};
}})()
""".strip()


__all__ = ["append_char_script", "extract_results_script", "locate_input_script"]
