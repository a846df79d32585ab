"""
Stand-in for the build tool's batch mode, driven by FakeEditorMode.txt in the project.

Modes (one per line, combinable):
  fail        build hook prints a compiler error and exits 2
  sleep       build hook prints a line then sleeps (for cancel/timeout tests)
  no-output   build hook exits 0 without writing output
  no-media    capture hook exits 1
  chatty      build hook prints many progress lines
"""
import json
import sys
import time
from pathlib import Path


def arg(name):
    argv = sys.argv[1:]
    if name in argv:
        index = argv.index(name)
        if index + 1 < len(argv):
            return argv[index + 1]
    return None


def main():
    project = Path(arg("-projectPath"))
    method = arg("-executeMethod") or ""
    target = arg("-buildTarget")
    output = Path(arg("-builderOutput"))
    mode_file = project / "FakeEditorMode.txt"
    modes = set(mode_file.read_text().split()) if mode_file.exists() else set()

    print(f"Batchmode started target={target}", flush=True)

    if method.endswith("CaptureMedia.PerformCapture"):
        if "no-media" in modes:
            print("Capture failed: no display", flush=True)
            return 1
        media = Path(arg("-builderMediaOut"))
        (media / "frames").mkdir(parents=True, exist_ok=True)
        (media / "cover.png").write_bytes(b"\x89PNG cover")
        for index in range(1, 4):
            (media / f"shot_{index}.png").write_bytes(f"shot {index}".encode())
        for index in range(1, 6):
            (media / "frames" / f"frame_{index:04d}.png").write_bytes(b"frame")
        print("Capture complete", flush=True)
        return 0

    if "sleep" in modes:
        print("Compiling scripts...", flush=True)
        time.sleep(60)
        return 0

    if "fail" in modes:
        print("Compiling scripts...", flush=True)
        print("Assets/Scripts/Player.cs(10,5): error CS1002: ; expected", flush=True)
        print("Build failed with errors", flush=True)
        return 2

    if "chatty" in modes:
        for index in range(50):
            print(f"Progress step {index}", flush=True)

    library = project / "Library"
    restored = library.exists()
    library.mkdir(exist_ok=True)
    (library / "marker.txt").write_text("cached")

    if "no-output" in modes:
        print("Build finished", flush=True)
        return 0

    config_path = project / "Assets/Resources/TemplateBuilder/RuntimeConfig.json"
    config = json.loads(config_path.read_text()) if config_path.exists() else {}
    manifest = (project / "Packages/manifest.json").read_text()

    if target == "WebGL":
        output.mkdir(parents=True, exist_ok=True)
        (output / "index.html").write_text("<html>game</html>")
        (output / "Build").mkdir(exist_ok=True)
        (output / "Build" / "game.wasm.gz").write_bytes(b"wasm")
        (output / "restored.txt").write_text("yes" if restored else "no")
        (output / "config.json").write_text(json.dumps(config))
        (output / "manifest.json").write_text(manifest)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"APK" + (b" restored" if restored else b""))

    print("Build succeeded", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
