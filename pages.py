# pages.py
# Inline templates rendered with flask.render_template_string.

BASE_STYLE = """
<style>
  body { font-family: Arial, sans-serif; margin: 40px; }
  h1 { margin-bottom: 8px; }
  label { display:block; margin-top: 16px; font-weight: 700; }
  input, select, textarea { width: 780px; max-width: 95vw; padding: 10px; font-size: 16px; }
  .row { margin-top: 14px; display:flex; gap:12px; flex-wrap:wrap; align-items:center; }
  button { margin-top: 18px; padding: 10px 18px; font-size: 18px; cursor:pointer; }
  .hint { margin-top: 16px; color: #555; line-height: 1.35; }
  .small { font-weight: 400; }
  .player { max-width: 520px; margin: 0 auto; text-align: center; }
  .player img { width: 100%; border-radius: 8px; }
  .bar { height: 8px; background: #ddd; border-radius: 4px; cursor: pointer; margin-top: 12px; }
  .bar div { height: 8px; background: #333; border-radius: 4px; width: 0; }
  .times { display:flex; justify-content: space-between; color:#555; font-size: 13px; }
  .tracks li { padding: 6px 0; cursor: pointer; }
  .tracks li.active { font-weight: 700; }
  .error { color: #b00020; }
</style>
"""

HOME = """
<!doctype html>
<html>
<head>
<meta charset="utf-8" />
<title>Song Art + QR</title>
""" + BASE_STYLE + """
</head>
<body>
  <h1>Song Art + QR</h1>

  <form action="/compose" method="get">
    <label>Artwork Image URL</label>
    <input type="text" name="image" placeholder="https://.../image.png" required />

    <label>QR Data <span class="small">(URL the code points to)</span></label>
    <input type="text" name="url" placeholder="https://..." />

    <label>Title</label>
    <input type="text" name="title" />

    <label>Lyrics</label>
    <textarea name="lyrics" rows="6"></textarea>

    <label>Layout</label>
    <select name="layout">
      {% for l in layouts %}<option value="{{ l.value }}">{{ l.name }} ({{ l.width }}x{{ l.height }})</option>{% endfor %}
    </select>

    <label>QR Theme</label>
    <select name="qrTheme">
      {% for name in themes %}<option value="{{ name }}">{{ name }}</option>{% endfor %}
    </select>

    <label>QR Size <span class="small">(50–150). Default 80</span></label>
    <input type="text" name="qrSize" value="80" />

    <label>Columns <span class="small">(1 or 2)</span></label>
    <input type="text" name="columnCount" value="1" />

    <div class="row">
      <button type="submit">Render</button>
      <a href="/files">files</a>
      <a href="/health">health</a>
    </div>

    <div class="hint">
      Font size is picked from the amount of lyrics unless <b>autoFitFont=false</b> is passed.
      Background colour is taken from the artwork unless <b>bgColor</b> is set.
    </div>
  </form>
</body>
</html>
"""

FILES = """
<!doctype html>
<html>
<head>
<meta charset="utf-8" />
<title>Files</title>
""" + BASE_STYLE + """
</head>
<body>
  <h1>Files <span class="small">/{{ prefix }}</span></h1>
  {% if parent is not none %}<p><a href="/files?prefix={{ parent | urlencode }}">..</a></p>{% endif %}
  <ul>
    {% for f in folders %}<li><a href="/files?prefix={{ f.path | urlencode }}">{{ f.name }}/</a></li>{% endfor %}
  </ul>
  <table>
    {% for f in files %}
    <tr>
      <td><a href="{{ f.url }}">{{ f.name }}</a></td>
      <td>{{ f.size }}</td>
      <td>{{ f.type }}</td>
    </tr>
    {% endfor %}
  </table>
</body>
</html>
"""

_PLAYER_SCRIPT = """
<script>
(function(){
  var tracks = {{ tracks | tojson }};
  var index = 0;
  var audio = document.getElementById('audio');
  var fill = document.getElementById('fill');
  var toggle = document.getElementById('toggle');
  function fmt(s){ if(!s || isNaN(s)) return '0:00'; var m=Math.floor(s/60), r=Math.floor(s%60); return m+':'+(r<10?'0':'')+r; }
  function load(i, play){
    index = i;
    audio.src = tracks[i].url;
    var items = document.querySelectorAll('.tracks li');
    for (var k=0;k<items.length;k++){ items[k].className = (k===i)?'active':''; }
    if (play) audio.play().catch(function(){});
  }
  audio.addEventListener('loadedmetadata', function(){ document.getElementById('dur').textContent = fmt(audio.duration); });
  audio.addEventListener('timeupdate', function(){
    document.getElementById('cur').textContent = fmt(audio.currentTime);
    fill.style.width = (audio.duration ? audio.currentTime/audio.duration*100 : 0) + '%';
  });
  audio.addEventListener('play', function(){ toggle.textContent = 'Pause'; });
  audio.addEventListener('pause', function(){ toggle.textContent = 'Play'; });
  audio.addEventListener('ended', function(){
    if (index < tracks.length - 1) { load(index + 1, true); }
    else { fill.style.width = '0%'; toggle.textContent = 'Play'; }
  });
  toggle.addEventListener('click', function(){ if (audio.paused) audio.play(); else audio.pause(); });
  document.getElementById('bar').addEventListener('click', function(e){
    if (!audio.duration) return;
    var rect = this.getBoundingClientRect();
    audio.currentTime = (e.clientX - rect.left) / rect.width * audio.duration;
  });
  var items = document.querySelectorAll('.tracks li');
  for (var k=0;k<items.length;k++){ (function(i){ items[i].addEventListener('click', function(){ load(i, true); }); })(k); }
  load(0, false);
})();
</script>
"""

PLAYER = """
<!doctype html>
<html>
<head>
<meta charset="utf-8" />
<title>{{ title or 'Player' }}</title>
""" + BASE_STYLE + """
</head>
<body>
  <div class="player">
    {% if image %}<img src="{{ image }}" alt="" />{% endif %}
    <h1>{{ title or name or '' }}</h1>
    <audio id="audio" preload="metadata"></audio>
    <button id="toggle">Play</button>
    <div class="bar" id="bar"><div id="fill"></div></div>
    <div class="times"><span id="cur">0:00</span><span id="dur">0:00</span></div>
    {% if tracks | length > 1 %}
    <ol class="tracks">
      {% for t in tracks %}<li>{{ t.title }}</li>{% endfor %}
    </ol>
    {% endif %}
  </div>
""" + _PLAYER_SCRIPT + """
</body>
</html>
"""

ERROR = """
<!doctype html>
<html>
<head><meta charset="utf-8" /><title>Not found</title>""" + BASE_STYLE + """</head>
<body><p class="error">{{ message }}</p></body>
</html>
"""
