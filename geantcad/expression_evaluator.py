# geantcad/expression_evaluator.py
import math
import asteval


def create_configured_asteval():
    """
    Factory function to create and configure a new asteval.Interpreter instance.
    Units follow the Geant4 convention: mm, rad and MeV are 1.
    """
    aeval = asteval.Interpreter(symtable={}, minimal=True, no_if=True, no_for=True, no_while=True, no_try=True)

    # Add safe math functions
    for func_name in ['sin', 'cos', 'tan', 'asin', 'acos', 'atan', 'atan2',
                      'sqrt', 'exp', 'log', 'log10', 'pow', 'abs']:
        if hasattr(math, func_name):
            aeval.symtable[func_name] = getattr(math, func_name)

    # Add constants and units
    aeval.symtable.update({
        'pi': math.pi, 'PI': math.pi, 'twopi': 2 * math.pi,
        'um': 0.001, 'mm': 1.0, 'cm': 10.0, 'm': 1000.0,
        'rad': 1.0, 'mrad': 0.001, 'deg': math.pi / 180.0,
        'degree': math.pi / 180.0,
        'eV': 1e-6, 'keV': 1e-3, 'MeV': 1.0, 'GeV': 1e3,
        'kelvin': 1.0, 'K': 1.0
    })

    return aeval


class ExpressionEvaluator:
    """A safe expression evaluator for numeric fields, using asteval."""

    def __init__(self):
        self.interpreter = create_configured_asteval()

    def define(self, name, value):
        self.interpreter.symtable[name] = value

    def is_defined(self, name):
        return name in self.interpreter.symtable

    def evaluate(self, expression, defines=None):
        """
        Evaluates `expression` with optional extra symbols.

        Args:
            expression (str): The string expression to evaluate.
            defines (dict, optional): name -> numeric value, visible to this call only.

        Returns:
            tuple: (True, value) on success, (False, error_message) on failure.
        """
        if isinstance(expression, (int, float)):
            return True, float(expression)

        # Save any symbols the call-local defines shadow, and restore them afterwards
        saved_symbols = {}
        if defines:
            for name, value in defines.items():
                if name in self.interpreter.symtable:
                    saved_symbols[name] = self.interpreter.symtable[name]
                self.interpreter.symtable[name] = value

        try:
            result = self.interpreter.eval(str(expression), show_errors=False, raise_errors=True)
            if isinstance(result, bool) or not isinstance(result, (int, float)):
                return False, f"'{expression}' does not evaluate to a number"
            return True, float(result)
        except Exception as e:
            # asteval exceptions are descriptive and safe to show the user.
            return False, str(e)
        finally:
            if defines:
                for name in defines:
                    if name in saved_symbols:
                        self.interpreter.symtable[name] = saved_symbols[name]
                    elif name in self.interpreter.symtable:
                        del self.interpreter.symtable[name]
