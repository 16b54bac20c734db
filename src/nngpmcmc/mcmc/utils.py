import logging
logger = logging.getLogger('nngpmcmc')


def clean_config(run_config):
    """
    Cleans the run config and sets defaults.
    All config keys use lowercase with underscores.
    """

    # Define Defaults and retrieve values from dictionary (all lowercase)
    run_config.setdefault('n_cores', 1)
    run_config.setdefault('n_cycles', 5)
    run_config.setdefault('n_iterations_update', 100)
    run_config.setdefault('burn_in', 0.5)
    run_config.setdefault('field_thinning', 0.05)
    run_config.setdefault('thinning', 1.0)
    run_config.setdefault('grb_stop', (1.01, 1.03))
    run_config.setdefault('ancillary', True)
    run_config.setdefault('n_chromatic', 5)

    run_config['grb_stop'] = tuple(float(v) for v in run_config['grb_stop'])

    if type(run_config['ancillary']) != bool:
        logger.warning("'ancillary' must be 'True' or 'False'; coercing %r", run_config['ancillary'])
        run_config['ancillary'] = bool(run_config['ancillary'])

    return run_config
