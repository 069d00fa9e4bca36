"""
Scripts injected into pages and relayed workers.

The proxy never runs these; it only emits them. Every decision they make at
runtime (which URLs go to which relay) is driven by the rule set exported by
``UrlClassifier.client_rules`` and serialized into the script, so the browser
applies the same classification as the server-side rewriters.
"""

import json
from typing import Any, Dict

from app.config import SiteConfig
from app.rewrite.state_blob import html_safe_json
from app.rewrite.url_classifier import UrlClassifier

BOOT_SCRIPT_ID = "wpx-worker-boot"
BEHAVIOUR_SCRIPT_ID = "wpx-behaviour"

# Upstream chrome injected asynchronously by the platform
CHROME_SELECTORS = [
    "#WIX_ADS",
    ".MyEGHM",
    '[data-testid="free-domain-banner"]',
    "#SITE_HEADER-placeholder",
    "#SITE_BANNER-placeholder",
    "#pinnedBottomRight",
]

ANCHOR_MAX_ATTEMPTS = 80
ANCHOR_RETRY_MS = 100
CHROME_SWEEP_MS = 700
ANCHOR_OFFSET_PX = -75

# Shared runtime classifier; ``G`` is the global scope (window or self).
_CLASSIFIER_JS = """
  function isApiHost(h){
    if (h === R.originHost) return true;
    for (var i = 0; i < R.apiDomains.length; i++){
      var d = R.apiDomains[i];
      if (h === d || h.slice(-(d.length + 1)) === '.' + d) return true;
    }
    return false;
  }
  function stripSite(p){
    if (!R.sitePath) return p;
    if (p === R.sitePath) return '/';
    return p.indexOf(R.sitePath + '/') === 0 ? p.slice(R.sitePath.length) : p;
  }
  function isRelay(s){
    var prefix = R.relayPrefix + '/';
    return s.indexOf(prefix) === 0 || s.indexOf(G.location.origin + prefix) === 0;
  }
  function relay(kind, target){
    return R.relayPrefix + '/' + kind + '?target=' + encodeURIComponent(target);
  }
  function apiTarget(s){
    try{
      var x = new URL(s, G.location.href);
      if (x.origin === G.location.origin){
        return x.pathname.indexOf(R.apiPath) === 0 ? R.origin + R.sitePath + x.pathname + x.search : null;
      }
      var h = x.hostname.toLowerCase();
      if (!isApiHost(h)) return null;
      var p = h === R.originHost ? stripSite(x.pathname) : x.pathname;
      return p.indexOf(R.apiPath) === 0 ? x.href : null;
    }catch(_){ return null; }
  }
  function assetTarget(s){
    try{
      var x = new URL(s, G.location.href);
      if (x.pathname.indexOf(R.apiPath) === 0) return null;
      return R.allowedHosts.indexOf(x.hostname.toLowerCase()) >= 0 ? x.href : null;
    }catch(_){ return null; }
  }
  function mapUrl(u){
    var s = String(u);
    if (isRelay(s)) return u;
    var api = apiTarget(s);
    if (api) return relay('api', api);
    var asset = assetTarget(s);
    if (asset) return relay('asset', asset);
    return u;
  }
  function mapWorker(u){
    var s = String(u);
    if (isRelay(s)) return u;
    var asset = assetTarget(s);
    return asset ? relay('worker', asset) : u;
  }
  function mapRequest(input){
    if (typeof input === 'string' || (typeof URL !== 'undefined' && input instanceof URL)){
      return mapUrl(String(input));
    }
    if (input && input.url){
      var mapped = mapUrl(input.url);
      if (mapped !== input.url) return new Request(mapped, input);
    }
    return input;
  }
"""

_BOOT_TEMPLATE = """
<script id="__ID__">
(function(){
  var G = window;
  var R = __RULES__;
__CLASSIFIER__
  try{
    var OW = G.Worker;
    if (typeof OW === 'function'){
      var PW = function(u, opts){ return new OW(mapWorker(u), opts); };
      PW.prototype = OW.prototype;
      G.Worker = PW;
    }
    var OSW = G.SharedWorker;
    if (typeof OSW === 'function'){
      var PSW = function(u, opts){ return new OSW(mapWorker(u), opts); };
      PSW.prototype = OSW.prototype;
      G.SharedWorker = PSW;
    }
  }catch(_){}
  try{
    var OF = G.fetch;
    if (typeof OF === 'function'){
      G.fetch = function(input, init){
        try{ input = mapRequest(input); }catch(_){}
        return OF.call(G, input, init);
      };
    }
  }catch(_){}
  try{
    var XO = XMLHttpRequest.prototype.open;
    XMLHttpRequest.prototype.open = function(){
      var args = Array.prototype.slice.call(arguments);
      try{ args[1] = mapUrl(args[1]); }catch(_){}
      return XO.apply(this, args);
    };
  }catch(_){}
})();
</script>"""

_WORKER_TEMPLATE = """
;(function(){
  var G = self;
  var R = __RULES__;
__CLASSIFIER__
  var IS = G.importScripts;
  if (typeof IS === 'function'){
    G.importScripts = function(){
      return IS.apply(G, Array.prototype.map.call(arguments, function(u){ return mapUrl(u); }));
    };
  }
  var OF = G.fetch;
  if (typeof OF === 'function'){
    G.fetch = function(input, init){
      try{ input = mapRequest(input); }catch(_){}
      return OF.call(G, input, init);
    };
  }
})();
"""

_BEHAVIOUR_TEMPLATE = """
<script id="__ID__">
(function () {
  var C = __SETTINGS__;
  var SKEY = '__wpx_anchor__';

  (function ensureCss(){
    var hidden = C.chromeSelectors.join(',');
    var css = ''
      + 'html,body{margin:0 !important;padding-top:0 !important;}'
      + 'html{scroll-padding-top:0 !important;}'
      + hidden + '{display:none !important;visibility:hidden !important;height:0 !important;'
      + 'min-height:0 !important;margin:0 !important;padding:0 !important;}'
      + '#SITE_CONTAINER,#SITE_ROOT{margin-top:0 !important;padding-top:0 !important;}';
    var s = document.createElement('style');
    s.id = 'wpx-chrome-css';
    s.textContent = css;
    (document.head || document.documentElement).appendChild(s);
  })();

  function hideChrome(){
    C.chromeSelectors.forEach(function(sel){
      document.querySelectorAll(sel).forEach(function(el){
        try{ el.style.setProperty('display', 'none', 'important'); }catch(_){}
      });
    });
    [document.documentElement, document.body,
     document.querySelector('#SITE_CONTAINER'), document.querySelector('#SITE_ROOT')]
      .forEach(function(el){
        if (!el) return;
        el.style.setProperty('padding-top', '0', 'important');
        el.style.setProperty('margin-top', '0', 'important');
      });
  }

  function toPublic(u){
    try{
      var x = new URL(u, location.href);
      if (x.href.indexOf(C.origin) !== 0) return u;
      var upstreamSite = C.origin + C.sitePath;
      if (C.sitePath && x.href.indexOf(upstreamSite) === 0) return C.publicOrigin + x.href.slice(upstreamSite.length);
      return C.publicHost + x.href.slice(C.origin.length);
    }catch(_){ return u; }
  }
  var PS = history.pushState.bind(history);
  history.pushState = function(s, t, u){ if (u) u = toPublic(u); return PS(s, t, u); };
  var RS = history.replaceState.bind(history);
  history.replaceState = function(s, t, u){ if (u) u = toPublic(u); return RS(s, t, u); };

  function cssEscape(id){
    try{ return (window.CSS && CSS.escape) ? CSS.escape(id) : id.replace(/[^a-zA-Z0-9_\\-]/g, '\\\\$&'); }
    catch(_){ return id; }
  }
  function header(){ return document.getElementById('SITE_HEADER') || document.querySelector('header.SITE_HEADER'); }
  function headerOffset(){ var h = header(); return h ? Math.round(h.getBoundingClientRect().height || 0) : 0; }
  function inHeader(el){ return !!(el && el.closest && (el.closest('#SITE_HEADER') || el.closest('header.SITE_HEADER'))); }

  function findAnchor(name){
    if (!name) return null;
    var quoted = '"' + name.replace(/"/g, '\\\\"') + '"';
    var selector = [
      '#' + cssEscape(name), '[id=' + quoted + ']', '[name=' + quoted + ']',
      '[data-anchor-id=' + quoted + ']', '[data-section-id=' + quoted + ']',
      '[data-item-id=' + quoted + ']', '[data-unique-id=' + quoted + ']',
      '[data-comp-id=' + quoted + ']', '[data-testid=' + quoted + ']',
      '[data-hook=' + quoted + ']', '[id*=' + quoted + ']'
    ].join(',');
    var found;
    try{ found = document.querySelectorAll(selector); }catch(_){ return null; }
    for (var i = 0; i < found.length; i++){
      if (found[i].tagName !== 'A' && !inHeader(found[i])) return found[i];
    }
    return null;
  }

  function scrollToElement(el){
    var offset = headerOffset() + (C.anchorOffsetPx | 0);
    var top = (window.pageYOffset || document.documentElement.scrollTop || 0) + el.getBoundingClientRect().top - offset;
    window.scrollTo({top: top < 0 ? 0 : top, behavior: 'smooth'});
  }

  function resolveAndScroll(name){
    var attempts = 0;
    (function tick(){
      var el = findAnchor(name);
      if (el){ scrollToElement(el); return; }
      attempts++;
      if (attempts < C.anchorAttempts) setTimeout(tick, C.anchorRetryMs);
    })();
  }

  document.addEventListener('click', function(e){
    var a = e.target && e.target.closest ? e.target.closest('a[href]') : null;
    if (!a) return;
    if (a.hasAttribute('data-testid') || a.hasAttribute('data-hook') || a.hasAttribute('data-state') || a.hasAttribute('data-mesh-id')) return;
    var href = a.getAttribute('href') || '';
    if (/^(mailto:|tel:|javascript:)/i.test(href)) return;
    if (a.target && a.target !== '_self') return;
    var u = null;
    try{ u = new URL(href, location.href); }catch(_){}

    var anchor = a.getAttribute('data-anchor') || (href.charAt(0) === '#' ? href.slice(1) : (u && u.hash ? u.hash.slice(1) : ''));
    if (anchor){
      var samePage = !u || (u.origin === location.origin && u.pathname === location.pathname);
      e.preventDefault();
      if (e.stopImmediatePropagation) e.stopImmediatePropagation();
      if (samePage){ resolveAndScroll(anchor); return; }
      try{ sessionStorage.setItem(SKEY, JSON.stringify({n: anchor})); }catch(_){}
      location.assign(toPublic(u.origin + u.pathname + u.search));
      return;
    }
    if (u && u.href.indexOf(C.origin) === 0){
      e.preventDefault();
      var mapped = toPublic(u.href);
      if (mapped !== location.href) location.assign(mapped);
    }
  }, true);

  function bootScroll(){
    try{
      var raw = sessionStorage.getItem(SKEY);
      if (raw){
        sessionStorage.removeItem(SKEY);
        var handoff = JSON.parse(raw);
        if (handoff && handoff.n){ resolveAndScroll(handoff.n); return; }
      }
    }catch(_){}
    if (location.hash && location.hash.length > 1){
      var name = location.hash.slice(1);
      history.replaceState(null, '', location.pathname + location.search);
      resolveAndScroll(name);
    }
  }

  (function enforceFavicon(){
    try{
      document.querySelectorAll('link[rel*="icon"]').forEach(function(el){ el.remove(); });
      var head = document.head || document.documentElement;
      var link = document.createElement('link');
      link.rel = 'icon';
      link.href = C.faviconUrl;
      head.appendChild(link);
      var touch = document.createElement('link');
      touch.rel = 'apple-touch-icon';
      touch.href = C.faviconUrl;
      head.appendChild(touch);
    }catch(_){}
  })();

  hideChrome();
  new MutationObserver(hideChrome).observe(document.documentElement, {childList: true, subtree: true});
  setInterval(hideChrome, C.sweepMs);
  window.addEventListener('load', bootScroll);
})();
</script>"""


def _script_json(data: Dict[str, Any]) -> str:
    return html_safe_json(json.dumps(data, ensure_ascii=False, separators=(",", ":")))


def boot_script(classifier: UrlClassifier) -> str:
    """Interception script placed first in <head>, before platform scripts."""
    return (
        _BOOT_TEMPLATE.replace("__ID__", BOOT_SCRIPT_ID)
        .replace("__CLASSIFIER__", _CLASSIFIER_JS)
        .replace("__RULES__", _script_json(classifier.client_rules()))
    )


def worker_prologue(classifier: UrlClassifier) -> str:
    """Prepended to relayed worker scripts to patch importScripts and fetch."""
    return _WORKER_TEMPLATE.replace("__CLASSIFIER__", _CLASSIFIER_JS).replace(
        "__RULES__", _script_json(classifier.client_rules())
    )


def behaviour_settings(config: SiteConfig) -> Dict[str, Any]:
    return {
        "origin": config.origin,
        "sitePath": config.site_path,
        "publicHost": config.public_host,
        "publicOrigin": config.public_origin,
        "faviconUrl": config.favicon_url,
        "chromeSelectors": CHROME_SELECTORS,
        "anchorAttempts": ANCHOR_MAX_ATTEMPTS,
        "anchorRetryMs": ANCHOR_RETRY_MS,
        "anchorOffsetPx": ANCHOR_OFFSET_PX,
        "sweepMs": CHROME_SWEEP_MS,
    }


def behaviour_script(config: SiteConfig) -> str:
    """Chrome removal, anchor scrolling and history URL mapping."""
    return _BEHAVIOUR_TEMPLATE.replace("__ID__", BEHAVIOUR_SCRIPT_ID).replace(
        "__SETTINGS__", _script_json(behaviour_settings(config))
    )
