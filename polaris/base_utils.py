# polaris/base_utils.py
import logging
import re

import commentjson
import yaml
from json_repair import repair_json

logger = logging.getLogger("polaris_backend")


class Utils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            text = f"\033[{COLOR_CODES[color.lower()]}m{text}\033[0m"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Replaces {key} placeholders only for the keys passed in kwargs; any other
        brace pair (e.g. JSON examples inside a prompt) is left untouched.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            missing_keys.append(key)
            return match.group(0)

        result = re.sub(r'\{(\w+)\}', replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"Placeholders left untouched in unsafe_string_format: {', '.join(missing_keys)}")
        return result

    # -----------------------
    # Lenient JSON loading
    # -----------------------

    def load_fault_tolerant_json(self, json_str):
        """
        Loads JSON-ish LLM output: commentjson first, YAML as a lenient fallback,
        then the same two after json_repair.
        Raises ValueError when everything fails.
        """
        def load_json(candidate):
            err = ""
            try:
                return commentjson.loads(self.clean_triple_backticks(candidate)), ""
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(self.clean_triple_backticks(candidate))
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nYAML parsing did not yield an object"
            except (yaml.YAMLError, RecursionError) as e:
                err += "\n--\n" + str(e)
            return None, err

        data, err = load_json(json_str)
        if data:
            return data
        repaired = repair_json(json_str)
        r_data, r_err = load_json(repaired)
        if r_data:
            return r_data
        self.color_print(f"load_fault_tolerant_json: JSON parsing failed: {r_err}", color="red")
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {r_err}")
